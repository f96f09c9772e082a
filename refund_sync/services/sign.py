"""支付网关 MD5 签名生成模块。"""

import hashlib


def build_sign_string(params: dict) -> str:
    """
    构建待签名字符串（不含密钥）。

    1. 过滤空值和 sign、sign_type 参数
    2. 按参数名 ASCII 码从小到大排序
    3. 拼接 URL 键值对（参数值不 URL 编码）
    """
    filtered = {
        k: v
        for k, v in params.items()
        if k not in ("sign", "sign_type") and v is not None and str(v) != ""
    }
    return "&".join(f"{k}={filtered[k]}" for k in sorted(filtered.keys()))


def generate_sign(params: dict, key: str) -> str:
    """
    生成 MD5 签名：待签名字符串末尾拼接 &key=商户密钥 后 MD5。

    返回小写 32 位十六进制签名字符串。
    """
    sign_str = build_sign_string(params) + "&key=" + key
    return hashlib.md5(sign_str.encode("utf-8")).hexdigest().lower()


def sign_params(params: dict, key: str, sign_type: str | None = None) -> dict:
    """返回附带 sign（以及可选 sign_type）的新参数字典。"""
    signed = dict(params)
    signed["sign"] = generate_sign(params, key)
    if sign_type:
        signed["sign_type"] = sign_type
    return signed
