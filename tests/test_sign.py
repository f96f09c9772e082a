"""MD5 签名模块单元测试。"""

import hashlib
import re

from refund_sync.services.sign import build_sign_string, generate_sign, sign_params


class TestBuildSignString:
    """build_sign_string 单元测试。"""

    def test_sorted_and_joined(self):
        params = {"out_trade_no": "ORD1", "pid": "1001", "money": "9.90"}
        assert build_sign_string(params) == "money=9.90&out_trade_no=ORD1&pid=1001"

    def test_filters_sign_sign_type_and_empty(self):
        params = {"a": "1", "b": "", "c": None, "sign": "x", "sign_type": "MD5"}
        assert build_sign_string(params) == "a=1"


class TestGenerateSign:
    """generate_sign 单元测试。"""

    def test_basic_sign(self):
        sign = generate_sign({"a": "1", "b": "2"}, "mykey")
        # 应为小写 32 位十六进制
        assert re.fullmatch(r"[0-9a-f]{32}", sign)

    def test_ascii_sort_order(self):
        """参数按 ASCII 排序，不同顺序输入应产生相同签名。"""
        key = "testkey"
        params_a = {"z": "1", "a": "2", "m": "3"}
        params_b = {"a": "2", "m": "3", "z": "1"}
        assert generate_sign(params_a, key) == generate_sign(params_b, key)

    def test_key_appended_as_key_param(self):
        """待签名字符串末尾拼接 &key=密钥。"""
        params = {"pid": "1001", "out_trade_no": "ORD1"}
        expected = hashlib.md5("out_trade_no=ORD1&pid=1001&key=SECRET".encode("utf-8")).hexdigest()
        assert generate_sign(params, "SECRET") == expected

    def test_refund_params_signed_string(self):
        """退款请求的 key 字段本身也参与排序拼接。"""
        params = {"pid": "1001", "key": "SECRET", "out_trade_no": "ORD1", "money": "9.90", "sign_type": "MD5"}
        signed = "key=SECRET&money=9.90&out_trade_no=ORD1&pid=1001&key=SECRET"
        assert generate_sign(params, "SECRET") == hashlib.md5(signed.encode("utf-8")).hexdigest()

    def test_different_key_changes_sign(self):
        params = {"a": "1"}
        assert generate_sign(params, "correct_key") != generate_sign(params, "wrong_key")

    def test_filters_sign_fields(self):
        base = {"a": "1", "b": "2"}
        with_sign = {"a": "1", "b": "2", "sign": "abc", "sign_type": "MD5"}
        assert generate_sign(base, "k") == generate_sign(with_sign, "k")


class TestSignParams:
    """sign_params 单元测试。"""

    def test_adds_sign_without_mutating_input(self):
        params = {"pid": "1001", "out_trade_no": "ORD1"}
        signed = sign_params(params, "k")
        assert "sign" not in params
        assert signed["sign"] == generate_sign(params, "k")
        assert "sign_type" not in signed

    def test_sign_type_added_but_not_signed(self):
        params = {"pid": "1001", "money": "1.00"}
        signed = sign_params(params, "k", sign_type="MD5")
        assert signed["sign_type"] == "MD5"
        assert signed["sign"] == generate_sign(params, "k")
