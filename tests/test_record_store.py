"""记录存储（访问码 / 订单 / 对账日志）单元测试。"""

import os
import re
import sqlite3
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# 在导入 refund_sync 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="record_store_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import refund_sync.database as _db_mod
from refund_sync.database import get_db, init_db
from refund_sync.models.schemas import OP_DRIFT_FIX, OP_MANUAL_REFUND, OP_ROLLBACK
from refund_sync.services.record_store import (
    RecordStore,
    RecordStoreError,
    generate_refund_order_id,
    normalize_code,
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
def store():
    return RecordStore()


def _set_refunded_at(code: str, when: datetime) -> None:
    db = get_db()
    try:
        db.execute(
            "UPDATE access_codes SET refunded_at = ? WHERE code = ?",
            (when.strftime("%Y-%m-%d %H:%M:%S"), code),
        )
        db.commit()
    finally:
        db.close()


# ── 工具函数 ──────────────────────────────────────────────


class TestHelpers:

    def test_normalize_code(self):
        assert normalize_code("  abc123 ") == "ABC123"
        assert normalize_code(None) == ""

    def test_refund_order_id_format(self):
        assert re.fullmatch(r"RF\d{20}\d{4}", generate_refund_order_id())


# ── 发码 ──────────────────────────────────────────────────


class TestCreatePaidOrder:

    def test_creates_order_and_active_code(self, store):
        record = store.create_paid_order("ORD001", "19.9", code="code0001")
        assert record.code == "CODE0001"
        assert record.status == "active"
        assert record.amount == Decimal("19.90")

        order = store.get_order("ORD001")
        assert order.payment_status == "paid"
        assert order.refund_status == "none"
        assert order.paid_at is not None

    def test_generated_code_is_uppercase_alnum(self, store):
        record = store.create_paid_order("ORD002", "1.00")
        assert re.fullmatch(r"[A-Z0-9]{12}", record.code)

    def test_duplicate_order_rejected(self, store):
        store.create_paid_order("ORD003", "1.00")
        with pytest.raises(ValueError, match="订单号已存在"):
            store.create_paid_order("ORD003", "1.00")

    def test_duplicate_code_rejected(self, store):
        store.create_paid_order("ORD004", "1.00", code="DUPCODE1")
        with pytest.raises(ValueError, match="访问码已存在"):
            store.create_paid_order("ORD005", "1.00", code="DUPCODE1")


# ── 查询 ──────────────────────────────────────────────────


class TestLookups:

    def test_get_access_code_case_insensitive(self, store):
        store.create_paid_order("ORD010", "5.00", code="LOOKUP01")
        assert store.get_access_code("lookup01").order_number == "ORD010"

    def test_get_missing_returns_none(self, store):
        assert store.get_access_code("NOPE0000") is None
        assert store.get_order("NOPE") is None
        assert store.get_code_by_order_number("NOPE") is None

    def test_get_code_by_order_number(self, store):
        store.create_paid_order("ORD011", "5.00", code="BYORDER1")
        assert store.get_code_by_order_number("ORD011").code == "BYORDER1"

    def test_list_active_codes(self, store):
        store.create_paid_order("ORD012", "5.00", code="ACTIVE01")
        store.create_paid_order("ORD013", "5.00", code="ACTIVE02")
        store.mark_refunded("ACTIVE01", OP_MANUAL_REFUND, "user", None, "gateway_api")
        assert [c.code for c in store.list_active_codes()] == ["ACTIVE02"]

    def test_list_recently_refunded_respects_window(self, store):
        store.create_paid_order("ORD014", "5.00", code="RECENT01")
        store.create_paid_order("ORD015", "5.00", code="OLDREF01")
        store.mark_refunded("RECENT01", OP_MANUAL_REFUND, "user", None, "gateway_api")
        store.mark_refunded("OLDREF01", OP_MANUAL_REFUND, "user", None, "gateway_api")
        _set_refunded_at("OLDREF01", datetime.now() - timedelta(hours=30))

        since = datetime.now() - timedelta(hours=24)
        assert [c.code for c in store.list_recently_refunded(since)] == ["RECENT01"]


# ── 状态迁移 ──────────────────────────────────────────────


class TestMarkRefunded:

    def test_updates_code_order_and_log(self, store):
        store.create_paid_order("ORD020", "9.90", code="MARK0001")
        updated = store.mark_refunded(
            "MARK0001", OP_MANUAL_REFUND, "user", {"accepted": True}, "gateway_api",
            reason="用户申请退款",
        )
        assert updated.status == "refunded"
        assert updated.refunded_at is not None
        assert updated.refund_order_id.startswith("RF")
        assert updated.refund_reason == "用户申请退款"

        order = store.get_order("ORD020")
        assert order.refund_status == "refunded"
        assert order.refund_method == "gateway_api"
        assert order.refund_order_id == updated.refund_order_id
        assert order.refunded_at == updated.refunded_at

        logs, total = store.list_logs()
        assert total == 1
        assert logs[0].operation_type == OP_MANUAL_REFUND
        assert logs[0].access_code == "MARK0001"
        assert logs[0].order_number == "ORD020"
        assert logs[0].performed_by == "user"
        assert logs[0].gateway_response == {"accepted": True}

    def test_second_transition_is_noop(self, store):
        store.create_paid_order("ORD021", "9.90", code="MARK0002")
        first = store.mark_refunded("MARK0002", OP_DRIFT_FIX, "drift_scanner", None, "gateway_auto_sync")
        second = store.mark_refunded("MARK0002", OP_MANUAL_REFUND, "user", None, "gateway_api")

        assert first is not None
        assert second is None
        assert store.get_access_code("MARK0002").refund_order_id == first.refund_order_id
        assert store.list_logs()[1] == 1

    def test_rollback_type_rejected(self, store):
        store.create_paid_order("ORD022", "9.90", code="MARK0003")
        with pytest.raises(ValueError):
            store.mark_refunded("MARK0003", OP_ROLLBACK, "user", None, "gateway_api")


class TestRefundClaim:

    def test_only_one_claim_at_a_time(self, store):
        store.create_paid_order("ORD025", "9.90", code="CLAIM001")
        token = store.claim_refund("claim001")
        assert token is not None
        assert store.claim_refund("CLAIM001") is None

        store.release_refund_claim("CLAIM001", token)
        assert store.claim_refund("CLAIM001") is not None

    def test_refunded_code_cannot_be_claimed(self, store):
        store.create_paid_order("ORD026", "9.90", code="CLAIM002")
        store.mark_refunded("CLAIM002", OP_DRIFT_FIX, "drift_scanner", None, "gateway_auto_sync")
        assert store.claim_refund("CLAIM002") is None

    def test_claimed_code_blocks_other_transitions(self, store):
        store.create_paid_order("ORD027", "9.90", code="CLAIM003")
        token = store.claim_refund("CLAIM003")

        assert store.mark_refunded("CLAIM003", OP_DRIFT_FIX, "drift_scanner", None, "gateway_auto_sync") is None
        assert store.mark_refunded("CLAIM003", OP_MANUAL_REFUND, "user", None, "gateway_api",
                                   claim_token="not-the-token") is None

        updated = store.mark_refunded("CLAIM003", OP_MANUAL_REFUND, "user", None, "gateway_api",
                                      claim_token=token)
        assert updated.status == "refunded"
        assert updated.refund_claim is None
        assert store.list_logs()[1] == 1

    def test_stale_claim_can_be_taken_over(self, store):
        store.create_paid_order("ORD028", "9.90", code="CLAIM004")
        old = store.claim_refund("CLAIM004")
        db = get_db()
        try:
            db.execute(
                "UPDATE access_codes SET refund_claimed_at = ? WHERE code = ?",
                ((datetime.now() - timedelta(minutes=10)).strftime("%Y-%m-%d %H:%M:%S"), "CLAIM004"),
            )
            db.commit()
        finally:
            db.close()

        new = store.claim_refund("CLAIM004")
        assert new is not None and new != old
        # 旧令牌释放不影响新占用
        store.release_refund_claim("CLAIM004", old)
        assert store.get_access_code("CLAIM004").refund_claim == new


class TestRollbackRefund:

    def test_clears_refund_fields(self, store):
        store.create_paid_order("ORD030", "9.90", code="ROLL0001")
        store.mark_refunded("ROLL0001", OP_MANUAL_REFUND, "user", None, "local_pending_gateway")
        rolled = store.rollback_refund("ROLL0001", "verification_system", {"is_refunded": False})

        assert rolled.status == "active"
        assert rolled.refunded_at is None
        assert rolled.refund_order_id is None
        assert rolled.refund_reason is None

        order = store.get_order("ORD030")
        assert order.refund_status == "none"
        assert order.refunded_at is None
        assert order.refund_order_id is None
        assert order.refund_method is None

        logs, total = store.list_logs(operation_type=OP_ROLLBACK)
        assert total == 1
        assert logs[0].performed_by == "verification_system"

    def test_rollback_of_active_is_noop(self, store):
        store.create_paid_order("ORD031", "9.90", code="ROLL0002")
        assert store.rollback_refund("ROLL0002", "verification_system", None) is None
        assert store.list_logs()[1] == 0


# ── 日志与运行记录 ────────────────────────────────────────


class TestLogs:

    def test_filter_and_paginate(self, store):
        for i in range(3):
            store.create_paid_order(f"ORD04{i}", "1.00", code=f"LOGCODE{i}")
            store.mark_refunded(f"LOGCODE{i}", OP_MANUAL_REFUND, "user", None, "gateway_api")
        store.rollback_refund("LOGCODE0", "verification_system", None)

        logs, total = store.list_logs(page=1, page_size=2)
        assert total == 4
        assert len(logs) == 2
        assert logs[0].id < logs[1].id

        logs, total = store.list_logs(access_code="logcode0")
        assert total == 2
        assert [log.operation_type for log in logs] == [OP_MANUAL_REFUND, OP_ROLLBACK]

    def test_iter_all_logs_in_write_order(self, store):
        store.create_paid_order("ORD050", "1.00", code="ITER0001")
        store.mark_refunded("ITER0001", OP_MANUAL_REFUND, "user", None, "gateway_api")
        store.rollback_refund("ITER0001", "verification_system", None)
        store.mark_refunded("ITER0001", OP_DRIFT_FIX, "drift_scanner", None, "gateway_auto_sync")
        assert [log.operation_type for log in store.iter_all_logs()] == [
            OP_MANUAL_REFUND, OP_ROLLBACK, OP_DRIFT_FIX,
        ]

    def test_job_runs(self, store):
        store.record_job_run("drift_sweep", "timer", "2024-01-01 00:00:00", "2024-01-01 00:00:05",
                             checked=3, changed=1, unchanged=2, errored=0, params={"batch_size": 5})
        store.record_job_run("verify_recent", "manual", "2024-01-01 01:00:00", "2024-01-01 01:00:03",
                             checked=1, changed=0, unchanged=1, errored=1)

        runs = store.list_job_runs()
        assert [r.job_type for r in runs] == ["verify_recent", "drift_sweep"]
        drift = store.list_job_runs(job_type="drift_sweep")[0]
        assert drift.params == {"batch_size": 5}
        assert drift.changed == 1


class TestStoreErrors:

    def test_unreadable_database_raises_store_error(self, store, tmp_path):
        _db_mod.DB_PATH = str(tmp_path / "missing_dir" / "x.db")
        with pytest.raises(RecordStoreError):
            store.list_active_codes()
