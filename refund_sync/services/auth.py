"""
运营人员认证模块：bcrypt 密码哈希、JWT 令牌、登录锁定与 FastAPI 依赖项。

对账任务的手动触发、日志查看、网关凭证配置都需要运营人员登录。
"""

import os
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from refund_sync.database import get_db

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.environ.get("JWT_EXPIRE_HOURS", "24"))

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15
MIN_PASSWORD_LENGTH = 6

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class AuthError(Exception):
    """登录或改密失败，消息可直接展示给调用方。"""
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(username: str) -> str:
    """签发运营人员 JWT。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": username, "role": "operator", "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Raises:
        AuthError: 令牌无效、过期或缺少用户信息。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise AuthError(f"令牌无效: {e}")
    if "sub" not in payload:
        raise AuthError("令牌缺少用户信息")
    return payload


def _record_failure(db, operator) -> None:
    """登录失败计数，达到上限时锁定账号。"""
    fail_count = operator["login_fail_count"] + 1
    locked_until = None
    if fail_count >= MAX_LOGIN_FAILURES:
        locked_until = (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).strftime(_TIME_FORMAT)
    db.execute(
        "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
        (fail_count, locked_until, operator["id"]),
    )
    db.commit()


def authenticate(username: str, password: str) -> str:
    """
    校验运营人员账号密码，成功返回 JWT。

    连续 MAX_LOGIN_FAILURES 次失败锁定 LOCKOUT_MINUTES 分钟。

    Raises:
        AuthError: 用户名或密码错误、账号已锁定。
    """
    db = get_db()
    try:
        operator = db.execute(
            "SELECT * FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not operator:
            raise AuthError("用户名或密码错误")

        if operator["locked_until"]:
            locked_until = datetime.strptime(operator["locked_until"], _TIME_FORMAT)
            if datetime.now() < locked_until:
                raise AuthError("账号已锁定，请稍后再试")
            # 锁定已过期
            db.execute(
                "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
                (operator["id"],),
            )
            db.commit()
            operator = db.execute(
                "SELECT * FROM admin WHERE id = ?", (operator["id"],)
            ).fetchone()

        if not verify_password(password, operator["password_hash"]):
            _record_failure(db, operator)
            raise AuthError("用户名或密码错误")

        db.execute(
            "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
            (operator["id"],),
        )
        db.commit()
        return create_token(username)
    finally:
        db.close()


def change_password(username: str, old_password: str, new_password: str) -> None:
    """
    修改运营人员密码。

    Raises:
        AuthError: 用户不存在、原密码错误或新密码过短。
    """
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise AuthError(f"新密码长度不能少于{MIN_PASSWORD_LENGTH}位")

    db = get_db()
    try:
        row = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            raise AuthError("用户不存在")
        if not verify_password(old_password, row["password_hash"]):
            raise AuthError("原密码错误")

        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(new_password), row["id"]),
        )
        db.commit()
    finally:
        db.close()


def get_current_operator(request: Request) -> dict:
    """
    FastAPI 依赖项：从 Authorization header (Bearer) 或 cookie 中提取并验证 JWT。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
    if not token:
        token = request.cookies.get("token")

    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        return verify_token(token)
    except AuthError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")
