"""Request signing and wire-format helpers for the wallet gateways."""

import base64
import hashlib
import hmac
import secrets
import textwrap
import xml.etree.ElementTree as ET
from typing import Any, Iterable, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from storefront_payments.errors import ProviderConfigurationError


def canonical_string(params: Mapping[str, Any], exclude: Iterable[str] = ("sign",)) -> str:
    """``k1=v1&k2=v2`` over the non-empty params, sorted by key, raw values."""
    skip = set(exclude)
    pairs = [
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in skip and params[key] is not None and params[key] != ""
    ]
    return "&".join(pairs)


def _pem(key: str, label: str) -> bytes:
    key = key.strip()
    if key.startswith("-----BEGIN"):
        return key.encode()
    # gateway consoles hand out the bare base64 body
    body = "\n".join(textwrap.wrap("".join(key.split()), 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n".encode()


def load_private_key(key: str):
    if not key:
        raise ProviderConfigurationError("Private key is not configured")
    try:
        return serialization.load_pem_private_key(_pem(key, "PRIVATE KEY"), password=None)
    except ValueError as e:
        raise ProviderConfigurationError(f"Private key could not be loaded: {e}") from e


def load_public_key(key: str):
    if not key:
        raise ProviderConfigurationError("Public key is not configured")
    try:
        return serialization.load_pem_public_key(_pem(key, "PUBLIC KEY"))
    except ValueError as e:
        raise ProviderConfigurationError(f"Public key could not be loaded: {e}") from e


def rsa_sign(content: str, private_key: str) -> str:
    key = load_private_key(private_key)
    signature = key.sign(content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def rsa_verify(content: str, signature: str, public_key: str) -> bool:
    key = load_public_key(public_key)
    try:
        key.verify(
            base64.b64decode(signature),
            content.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except (InvalidSignature, ValueError):
        return False
    return True


def md5_sign(params: Mapping[str, Any], api_key: str) -> str:
    if not api_key:
        raise ProviderConfigurationError("API key is not configured")
    string_sign_temp = f"{canonical_string(params)}&key={api_key}"
    return hashlib.md5(string_sign_temp.encode("utf-8")).hexdigest().upper()


def md5_verify(params: Mapping[str, Any], api_key: str) -> bool:
    signature = params.get("sign")
    if not signature:
        return False
    return hmac.compare_digest(str(signature), md5_sign(params, api_key))


def nonce_str() -> str:
    return secrets.token_hex(16)


def dict_to_xml(params: Mapping[str, Any]) -> str:
    parts = ["<xml>"]
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, int):
            parts.append(f"<{key}>{value}</{key}>")
        else:
            text = str(value).replace("]]>", "]]]]><![CDATA[>")
            parts.append(f"<{key}><![CDATA[{text}]]></{key}>")
    parts.append("</xml>")
    return "".join(parts)


def xml_to_dict(payload: str | bytes) -> dict[str, str]:
    """Flatten a ``<xml>`` document into a key -> text mapping."""
    text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    if "<!DOCTYPE" in text or "<!ENTITY" in text:
        raise ValueError("XML declarations are not accepted")
    root = ET.fromstring(text)
    return {child.tag: (child.text or "") for child in root}
