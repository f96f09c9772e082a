"""
平台配置服务：管理 system_config 表的读写。

提供网关凭证加密存储、对账任务参数读取，并据此构造 GatewayConfig。
使用 Fernet 对称加密保护敏感凭证，密钥由 JWT_SECRET 通过 PBKDF2 派生。
"""

import base64
import logging
import os
import sqlite3
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from refund_sync.database import get_db
from refund_sync.services.gateway_client import (
    GatewayClient,
    GatewayConfig,
    SignatureOrTransportError,
)
from refund_sync.services.record_store import RecordStoreError

logger = logging.getLogger(__name__)

# 凭证连通性检测使用的占位订单号
PROBE_ORDER_NUMBER = "CONNECTIVITY_PROBE"


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"refund-sync-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    f = _get_fernet()
    return f.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    """解密密文字符串，返回明文。"""
    f = _get_fernet()
    return f.decrypt(ciphertext.encode("utf-8")).decode("utf-8")


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """
    读取 system_config 表中指定 key 的值。

    Raises:
        RecordStoreError: 数据库无法读取。
    """
    try:
        db = get_db()
        try:
            row = db.execute(
                "SELECT config_value FROM system_config WHERE config_key = ?",
                (key,),
            ).fetchone()
            return row["config_value"] if row else None
        finally:
            db.close()
    except sqlite3.Error as e:
        raise RecordStoreError(f"读取配置失败: {e}")


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        db = get_db()
        try:
            existing = db.execute(
                "SELECT id FROM system_config WHERE config_key = ?", (key,)
            ).fetchone()
            if existing:
                db.execute(
                    "UPDATE system_config SET config_value = ?, updated_at = ? WHERE config_key = ?",
                    (value, now, key),
                )
            else:
                db.execute(
                    "INSERT INTO system_config (config_key, config_value, updated_at) VALUES (?, ?, ?)",
                    (key, value, now),
                )
            db.commit()
        finally:
            db.close()
    except sqlite3.Error as e:
        raise RecordStoreError(f"写入配置失败: {e}")


# ── 网关凭证 ──────────────────────────────────────────────


def save_gateway_credentials(
    pid: str,
    key: str,
    query_url: str | None = None,
    refund_url: str | None = None,
    timeout: float | None = None,
) -> dict:
    """
    保存网关凭证（密钥加密存储），并尝试连通性验证。

    连通性验证用占位订单号调用一次查询接口：只要网关没有拒绝签名/凭证，即视为验证通过。

    Returns:
        dict: {"status": "verified"/"failed", "message": 描述信息}
    """
    if not pid or not key:
        raise PlatformConfigError("商户ID和密钥不能为空")

    set_config("gateway_pid", pid)
    set_config("gateway_key", _encrypt(key))
    set_config("gateway_query_url", query_url or None)
    set_config("gateway_refund_url", refund_url or None)
    set_config("gateway_timeout", str(timeout) if timeout else None)

    client = GatewayClient(load_gateway_config())
    result = client.query_status(PROBE_ORDER_NUMBER)
    if result.error is None:
        status, message = "verified", "凭证验证通过"
    elif isinstance(result.error, SignatureOrTransportError):
        status, message = "failed", f"凭证验证失败，请检查商户ID和密钥: {result.error}"
    else:
        status, message = "failed", f"网关暂时无法连通，凭证已保存: {result.error}"

    set_config("gateway_credential_status", status)
    logger.info("网关凭证已保存: pid=%s, status=%s", pid, status)
    return {"status": status, "message": message}


def get_gateway_credentials() -> dict | None:
    """
    获取解密后的网关凭证。

    Returns:
        dict: {"pid", "key", "query_url", "refund_url", "timeout"} 或 None（未配置时）。
    """
    pid = get_config("gateway_pid")
    encrypted_key = get_config("gateway_key")
    if not pid or not encrypted_key:
        return None

    try:
        key = _decrypt(encrypted_key)
    except InvalidToken:
        logger.error("解密网关密钥失败")
        return None

    timeout = get_config("gateway_timeout")
    return {
        "pid": pid,
        "key": key,
        "query_url": get_config("gateway_query_url"),
        "refund_url": get_config("gateway_refund_url"),
        "timeout": float(timeout) if timeout else None,
    }


def load_gateway_config() -> GatewayConfig:
    """构造 GatewayConfig：后台保存的凭证优先，其次使用环境变量。"""
    env_config = GatewayConfig.from_env()
    stored = get_gateway_credentials()
    if not stored:
        return env_config
    return GatewayConfig(
        pid=stored["pid"],
        key=stored["key"],
        query_url=stored["query_url"] or env_config.query_url,
        refund_url=stored["refund_url"] or env_config.refund_url,
        timeout=stored["timeout"] or env_config.timeout,
    )


def get_gateway_settings() -> dict:
    """返回脱敏后的网关配置与状态，用于后台展示。"""
    config = load_gateway_config()
    source = "database" if get_gateway_credentials() else "env"
    if not config.is_configured:
        return {"status": "unconfigured", "source": source}
    return {
        "status": get_config("gateway_credential_status") or "configured",
        "source": source,
        "pid": config.pid,
        "key": _mask(config.key),
        "query_url": config.query_url,
        "refund_url": config.refund_url,
        "timeout": config.timeout,
    }


# ── 对账任务参数 ──────────────────────────────────────────


def get_reconcile_settings() -> dict:
    """读取对账任务参数（环境变量）。"""
    return {
        "batch_size": int(os.getenv("RECONCILE_BATCH_SIZE", "5")),
        "verify_batch_size": int(os.getenv("VERIFY_BATCH_SIZE", "3")),
        "batch_delay": float(os.getenv("RECONCILE_BATCH_DELAY", "2")),
        "drift_sweep_interval": int(os.getenv("DRIFT_SWEEP_INTERVAL", "3600")),
        "verify_interval": int(os.getenv("VERIFY_INTERVAL", "3600")),
        "verify_hours_back": float(os.getenv("VERIFY_HOURS_BACK", "24")),
    }
