"""运营人员认证模块单元测试。"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

# 在导入 refund_sync 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="auth_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-auth"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"

import refund_sync.database as _db_mod
from refund_sync.database import get_db, init_db
from refund_sync.main import app
from refund_sync.services.auth import (
    AuthError,
    change_password,
    create_token,
    hash_password,
    verify_password,
    verify_token,
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS reconciliation_logs;
        DROP TABLE IF EXISTS job_runs;
        DROP TABLE IF EXISTS access_codes;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS system_config;
        DROP TABLE IF EXISTS admin;
    """)
    conn.close()
    init_db()
    yield


@pytest.fixture
def client():
    return TestClient(app)


def _login(client, password="admin123"):
    return client.post("/api/admin/auth/login", json={
        "username": "admin", "password": password,
    }).json()


# ── 密码哈希测试 ──


class TestPasswordHashing:

    def test_hash_and_verify(self):
        hashed = hash_password("mypassword")
        assert verify_password("mypassword", hashed)
        assert not verify_password("wrongpassword", hashed)

    def test_different_hashes_for_same_password(self):
        """同一密码两次哈希结果不同（bcrypt salt）。"""
        assert hash_password("test") != hash_password("test")


# ── JWT 令牌测试 ──


class TestJWTToken:

    def test_create_and_verify_token(self):
        payload = verify_token(create_token("admin"))
        assert payload["sub"] == "admin"
        assert payload["role"] == "operator"
        assert "exp" in payload

    def test_invalid_token_raises(self):
        with pytest.raises(AuthError):
            verify_token("invalid.token.here")

    def test_tampered_token_raises(self):
        token = create_token("admin")
        header, payload, signature = token.split(".")
        # 改签名段中间的字符，末位字符可能只落在填充位上
        mid = len(signature) // 2
        swapped = "A" if signature[mid] != "A" else "B"
        tampered = ".".join([header, payload, signature[:mid] + swapped + signature[mid + 1:]])
        with pytest.raises(AuthError):
            verify_token(tampered)


# ── 登录接口测试 ──


class TestLoginRoute:

    def test_login_success(self, client):
        data = _login(client)
        assert data["code"] == 1
        assert verify_token(data["token"])["sub"] == "admin"

    def test_login_wrong_password(self, client):
        data = _login(client, "wrongpass")
        assert data["code"] == -1
        assert "错误" in data["msg"]

    def test_login_wrong_username(self, client):
        resp = client.post("/api/admin/auth/login", json={
            "username": "nonexistent", "password": "admin123",
        })
        assert resp.json()["code"] == -1


# ── 账号锁定测试 ──


class TestAccountLockout:
    """连续 5 次失败锁定 15 分钟测试。"""

    def test_lockout_after_5_failures(self, client):
        for _ in range(5):
            _login(client, "wrong")
        data = _login(client)
        assert data["code"] == -1
        assert "锁定" in data["msg"]

    def test_4_failures_not_locked(self, client):
        for _ in range(4):
            _login(client, "wrong")
        assert _login(client)["code"] == 1

    def test_lockout_expires(self, client):
        for _ in range(5):
            _login(client, "wrong")
        past = (datetime.now() - timedelta(minutes=1)).strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute("UPDATE admin SET locked_until = ? WHERE username = 'admin'", (past,))
            db.commit()
        finally:
            db.close()
        assert _login(client)["code"] == 1


# ── 修改密码 ──


class TestChangePassword:

    def test_change_password(self):
        change_password("admin", "admin123", "newpass123")
        with pytest.raises(AuthError):
            change_password("admin", "admin123", "another1")

    def test_too_short(self):
        with pytest.raises(AuthError, match="长度"):
            change_password("admin", "admin123", "123")

    def test_route_requires_token(self, client):
        resp = client.post("/api/admin/settings/change-password", json={
            "old_password": "admin123", "new_password": "newpass123",
        })
        assert resp.status_code == 401

    def test_route_changes_password(self, client):
        token = _login(client)["token"]
        resp = client.post(
            "/api/admin/settings/change-password",
            json={"old_password": "admin123", "new_password": "newpass123"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.json()["code"] == 1
        assert _login(client, "newpass123")["code"] == 1


# ── 认证依赖项 ──


class TestCurrentOperator:

    def test_missing_token_returns_401(self, client):
        assert client.get("/api/admin/reconcile/logs").status_code == 401

    def test_invalid_token_returns_401(self, client):
        resp = client.get(
            "/api/admin/reconcile/logs",
            headers={"Authorization": "Bearer invalid.token.here"},
        )
        assert resp.status_code == 401

    def test_cookie_token(self, client):
        client.cookies.set("token", create_token("admin"))
        resp = client.get("/api/admin/reconcile/logs")
        assert resp.status_code == 200
