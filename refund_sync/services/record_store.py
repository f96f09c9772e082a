"""
记录存储：访问码、订单两个可变集合 + 只追加的对账日志。

所有状态迁移都是带条件的更新（WHERE status = 期望旧状态），
迁移、订单同步与日志写入在同一事务内完成；条件不满足时不写任何数据。
"""

import json
import logging
import random
import secrets
import sqlite3
import string
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator

from refund_sync.database import get_db
from refund_sync.models.schemas import (
    CODE_ACTIVE,
    CODE_REFUNDED,
    OP_ROLLBACK,
    OPERATION_TYPES,
    PAYMENT_PAID,
    REFUND_DONE,
    REFUND_NONE,
    AccessCode,
    JobRun,
    Order,
    ReconciliationLog,
)

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 12
REFUND_CLAIM_TTL = timedelta(minutes=2)


class RecordStoreError(Exception):
    """存储层无法读写。"""
    pass


def now_str() -> str:
    return datetime.now().strftime(TIME_FORMAT)


def normalize_code(code: str) -> str:
    """访问码统一去空白并转大写。"""
    return (code or "").strip().upper()


def generate_access_code(length: int = CODE_LENGTH) -> str:
    """生成大写字母+数字的访问码。"""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_refund_order_id() -> str:
    """退款单号：RF + 时间戳 + 4 位随机数。"""
    ts = datetime.now().strftime("%Y%m%d%H%M%S%f")
    return f"RF{ts}{random.randint(0, 9999):04d}"


def _row_to_code(row: sqlite3.Row) -> AccessCode:
    data = dict(row)
    data["amount"] = Decimal(str(data["amount"]))
    return AccessCode(**data)


def _row_to_order(row: sqlite3.Row) -> Order:
    data = dict(row)
    data["amount"] = Decimal(str(data["amount"]))
    return Order(**data)


def _row_to_log(row: sqlite3.Row) -> ReconciliationLog:
    data = dict(row)
    if data.get("gateway_response"):
        data["gateway_response"] = json.loads(data["gateway_response"])
    return ReconciliationLog(**data)


class RecordStore:
    """AccessCode / Order / ReconciliationLog 的存取抽象。"""

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """打开连接，sqlite 错误统一转为 RecordStoreError。"""
        try:
            db = get_db()
        except sqlite3.Error as e:
            raise RecordStoreError(f"无法打开数据库: {e}")
        try:
            yield db
        except sqlite3.Error as e:
            db.rollback()
            raise RecordStoreError(f"数据库读写失败: {e}")
        finally:
            db.close()

    # ── 发码（支付成功回调的外部协作方使用） ──────────────

    def create_paid_order(
        self,
        order_number: str,
        amount: Decimal | str,
        paid_at: str | None = None,
        code: str | None = None,
    ) -> AccessCode:
        """
        同时创建已支付订单和对应的 active 访问码。

        Raises:
            ValueError: 订单号或访问码已存在。
        """
        now = now_str()
        paid_at = paid_at or now
        amount_str = f"{Decimal(str(amount)):.2f}"
        code = normalize_code(code) if code else None

        with self._connect() as db:
            if db.execute(
                "SELECT 1 FROM orders WHERE order_number = ?", (order_number,)
            ).fetchone():
                raise ValueError(f"订单号已存在: {order_number}")

            if code is None:
                for _ in range(10):
                    candidate = generate_access_code()
                    if not db.execute(
                        "SELECT 1 FROM access_codes WHERE code = ?", (candidate,)
                    ).fetchone():
                        code = candidate
                        break
                else:
                    raise ValueError("无法生成唯一访问码，请重试")
            elif db.execute(
                "SELECT 1 FROM access_codes WHERE code = ?", (code,)
            ).fetchone():
                raise ValueError(f"访问码已存在: {code}")

            db.execute(
                """INSERT INTO orders
                   (order_number, amount, payment_status, refund_status,
                    paid_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (order_number, amount_str, PAYMENT_PAID, REFUND_NONE, paid_at, now, now),
            )
            db.execute(
                """INSERT INTO access_codes
                   (code, order_number, status, amount, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (code, order_number, CODE_ACTIVE, amount_str, now, now),
            )
            db.commit()

        logger.info("已创建订单与访问码: order_number=%s, code=%s", order_number, code)
        return self.get_access_code(code)

    # ── 查询 ──────────────────────────────────────────────

    def get_access_code(self, code: str) -> AccessCode | None:
        with self._connect() as db:
            row = db.execute(
                "SELECT * FROM access_codes WHERE code = ?", (normalize_code(code),)
            ).fetchone()
        return _row_to_code(row) if row else None

    def get_code_by_order_number(self, order_number: str) -> AccessCode | None:
        with self._connect() as db:
            row = db.execute(
                "SELECT * FROM access_codes WHERE order_number = ? ORDER BY id ASC LIMIT 1",
                (order_number,),
            ).fetchone()
        return _row_to_code(row) if row else None

    def get_order(self, order_number: str) -> Order | None:
        with self._connect() as db:
            row = db.execute(
                "SELECT * FROM orders WHERE order_number = ?", (order_number,)
            ).fetchone()
        return _row_to_order(row) if row else None

    def list_codes_by_status(self, status: str) -> list[AccessCode]:
        with self._connect() as db:
            rows = db.execute(
                "SELECT * FROM access_codes WHERE status = ? ORDER BY id ASC",
                (status,),
            ).fetchall()
        return [_row_to_code(r) for r in rows]

    def list_active_codes(self) -> list[AccessCode]:
        return self.list_codes_by_status(CODE_ACTIVE)

    def list_recently_refunded(self, since: datetime) -> list[AccessCode]:
        """status = refunded 且 refunded_at >= since 的访问码。"""
        with self._connect() as db:
            rows = db.execute(
                """SELECT * FROM access_codes
                   WHERE status = ? AND refunded_at IS NOT NULL AND refunded_at >= ?
                   ORDER BY refunded_at ASC, id ASC""",
                (CODE_REFUNDED, since.strftime(TIME_FORMAT)),
            ).fetchall()
        return [_row_to_code(r) for r in rows]

    # ── 退款占用 ──────────────────────────────────────────

    def claim_refund(self, code: str) -> str | None:
        """
        在调用网关退款前占用 active 访问码，同一时刻只有一个请求能拿到占用。

        超过 REFUND_CLAIM_TTL 的占用视为失效，可被重新占用。

        Returns:
            占用令牌；访问码已非 active 或正被其他请求占用时返回 None。
        """
        code = normalize_code(code)
        now = datetime.now()
        token = secrets.token_hex(16)
        stale_before = (now - REFUND_CLAIM_TTL).strftime(TIME_FORMAT)

        with self._connect() as db:
            cursor = db.execute(
                """UPDATE access_codes
                   SET refund_claim = ?, refund_claimed_at = ?
                   WHERE code = ? AND status = ?
                     AND (refund_claim IS NULL OR refund_claimed_at < ?)""",
                (token, now.strftime(TIME_FORMAT), code, CODE_ACTIVE, stale_before),
            )
            db.commit()

        if cursor.rowcount == 0:
            logger.info("访问码未能占用（已退款或退款进行中）: code=%s", code)
            return None
        return token

    def release_refund_claim(self, code: str, token: str) -> None:
        """释放自己持有的占用；占用已被迁移清除或被接管时无操作。"""
        with self._connect() as db:
            db.execute(
                """UPDATE access_codes
                   SET refund_claim = NULL, refund_claimed_at = NULL
                   WHERE code = ? AND refund_claim = ?""",
                (normalize_code(code), token),
            )
            db.commit()

    # ── 状态迁移 ──────────────────────────────────────────

    def mark_refunded(
        self,
        code: str,
        operation_type: str,
        performed_by: str,
        gateway_payload: dict | None,
        refund_method: str,
        reason: str | None = None,
        claim_token: str | None = None,
    ) -> AccessCode | None:
        """
        active → refunded：同时更新订单退款字段并追加一条对账日志。

        claim_token 为 claim_refund 拿到的占用令牌；不传时只有未被占用
        （或占用已失效）的访问码可以迁移，正在退款中的访问码不会被其他路径改写。

        Returns:
            迁移后的访问码；访问码已不是 active 或被其他请求占用时返回 None，且不写日志。
        """
        if operation_type not in OPERATION_TYPES or operation_type == OP_ROLLBACK:
            raise ValueError(f"不支持的退款操作类型: {operation_type}")

        code = normalize_code(code)
        now = now_str()
        refund_order_id = generate_refund_order_id()
        if claim_token is not None:
            claim_sql = "refund_claim = ?"
            claim_param = claim_token
        else:
            claim_sql = "(refund_claim IS NULL OR refund_claimed_at < ?)"
            claim_param = (datetime.now() - REFUND_CLAIM_TTL).strftime(TIME_FORMAT)

        with self._connect() as db:
            cursor = db.execute(
                f"""UPDATE access_codes
                    SET status = ?, refunded_at = ?, refund_order_id = ?,
                        refund_reason = ?, refund_claim = NULL,
                        refund_claimed_at = NULL, updated_at = ?
                    WHERE code = ? AND status = ? AND {claim_sql}""",
                (CODE_REFUNDED, now, refund_order_id, reason, now, code, CODE_ACTIVE, claim_param),
            )
            if cursor.rowcount == 0:
                db.rollback()
                logger.info("访问码已非 active 或正被占用，跳过退款标记: code=%s", code)
                return None

            order_number = db.execute(
                "SELECT order_number FROM access_codes WHERE code = ?", (code,)
            ).fetchone()["order_number"]
            db.execute(
                """UPDATE orders
                   SET refund_status = ?, refunded_at = ?, refund_order_id = ?,
                       refund_method = ?, updated_at = ?
                   WHERE order_number = ?""",
                (REFUND_DONE, now, refund_order_id, refund_method, now, order_number),
            )
            self._append_log(
                db, operation_type, code, order_number, gateway_payload, performed_by, now
            )
            db.commit()

        logger.info(
            "访问码已标记退款: code=%s, order_number=%s, type=%s, refund_order_id=%s",
            code, order_number, operation_type, refund_order_id,
        )
        return self.get_access_code(code)

    def rollback_refund(
        self,
        code: str,
        performed_by: str,
        gateway_payload: dict | None,
    ) -> AccessCode | None:
        """
        refunded → active：清除两侧退款字段并追加 rollback 日志。

        Returns:
            回滚后的访问码；访问码已不是 refunded 时返回 None。
        """
        code = normalize_code(code)
        now = now_str()

        with self._connect() as db:
            cursor = db.execute(
                """UPDATE access_codes
                   SET status = ?, refunded_at = NULL, refund_order_id = NULL,
                       refund_reason = NULL, updated_at = ?
                   WHERE code = ? AND status = ?""",
                (CODE_ACTIVE, now, code, CODE_REFUNDED),
            )
            if cursor.rowcount == 0:
                db.rollback()
                logger.info("访问码已非 refunded，跳过回滚: code=%s", code)
                return None

            order_number = db.execute(
                "SELECT order_number FROM access_codes WHERE code = ?", (code,)
            ).fetchone()["order_number"]
            db.execute(
                """UPDATE orders
                   SET refund_status = ?, refunded_at = NULL, refund_order_id = NULL,
                       refund_method = NULL, updated_at = ?
                   WHERE order_number = ?""",
                (REFUND_NONE, now, order_number),
            )
            self._append_log(
                db, OP_ROLLBACK, code, order_number, gateway_payload, performed_by, now
            )
            db.commit()

        logger.info("访问码已回滚为 active: code=%s, order_number=%s", code, order_number)
        return self.get_access_code(code)

    # ── 对账日志 ──────────────────────────────────────────

    @staticmethod
    def _append_log(
        db: sqlite3.Connection,
        operation_type: str,
        code: str,
        order_number: str,
        gateway_payload: dict | None,
        performed_by: str,
        performed_at: str,
    ) -> None:
        db.execute(
            """INSERT INTO reconciliation_logs
               (operation_type, access_code, order_number, gateway_response,
                performed_by, performed_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                operation_type,
                code,
                order_number,
                json.dumps(gateway_payload, ensure_ascii=False, default=str)
                if gateway_payload is not None else None,
                performed_by,
                performed_at,
            ),
        )

    def list_logs(
        self,
        access_code: str | None = None,
        order_number: str | None = None,
        operation_type: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ReconciliationLog], int]:
        """按条件分页查询对账日志（按写入顺序），返回 (日志列表, 总数)。"""
        conditions = []
        params: list = []
        if access_code:
            conditions.append("access_code = ?")
            params.append(normalize_code(access_code))
        if order_number:
            conditions.append("order_number = ?")
            params.append(order_number)
        if operation_type:
            conditions.append("operation_type = ?")
            params.append(operation_type)
        where = ("WHERE " + " AND ".join(conditions)) if conditions else ""

        page = max(page, 1)
        offset = (page - 1) * page_size
        with self._connect() as db:
            total = db.execute(
                f"SELECT COUNT(*) AS cnt FROM reconciliation_logs {where}", params
            ).fetchone()["cnt"]
            rows = db.execute(
                f"""SELECT * FROM reconciliation_logs {where}
                    ORDER BY id ASC LIMIT ? OFFSET ?""",
                params + [page_size, offset],
            ).fetchall()
        return [_row_to_log(r) for r in rows], total

    def iter_all_logs(self) -> list[ReconciliationLog]:
        """按写入顺序返回全部对账日志，用于重放审计。"""
        with self._connect() as db:
            rows = db.execute(
                "SELECT * FROM reconciliation_logs ORDER BY id ASC"
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    # ── 任务运行记录 ──────────────────────────────────────

    def record_job_run(
        self,
        job_type: str,
        trigger_source: str,
        started_at: str,
        finished_at: str,
        checked: int,
        changed: int,
        unchanged: int,
        errored: int,
        params: dict | None = None,
    ) -> int:
        with self._connect() as db:
            cursor = db.execute(
                """INSERT INTO job_runs
                   (job_type, trigger_source, checked, changed, unchanged, errored,
                    params, started_at, finished_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job_type, trigger_source, checked, changed, unchanged, errored,
                    json.dumps(params) if params is not None else None,
                    started_at, finished_at,
                ),
            )
            db.commit()
            return cursor.lastrowid

    def list_job_runs(self, job_type: str | None = None, limit: int = 20) -> list[JobRun]:
        with self._connect() as db:
            if job_type:
                rows = db.execute(
                    "SELECT * FROM job_runs WHERE job_type = ? ORDER BY id DESC LIMIT ?",
                    (job_type, limit),
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM job_runs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        runs = []
        for r in rows:
            data = dict(r)
            if data.get("params"):
                data["params"] = json.loads(data["params"])
            runs.append(JobRun(**data))
        return runs
