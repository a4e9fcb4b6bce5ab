"""
Signature Service for Gateway Callbacks

Canonical parameter encoding plus HMAC sign/verify, one codec per gateway:

- VNPay: HMAC-SHA512, values escaped like JavaScript encodeURIComponent
  with %20 rewritten to '+', only vnp_* fields signed, empty values dropped
- PayOS: HMAC-SHA256, values used raw, None rendered as '', empty values
  signed, webhook payload unwrapped from its "data" envelope

Callers pass amounts already scaled into the gateway unit; the codecs do no
currency math.
"""
import hashlib
import hmac
import json
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence
from urllib.parse import quote

# Characters encodeURIComponent leaves untouched (besides alphanumerics)
_URI_COMPONENT_SAFE = "-_.!~*'()"


def encode_uri_component(value: str) -> str:
    """Percent-encode exactly like JavaScript's encodeURIComponent."""
    return quote(value, safe=_URI_COMPONENT_SAFE)


def stringify_value(value: Any) -> str:
    """
    Render a parameter value the way the gateways' JavaScript SDKs do.

    None -> '', booleans -> 'true'/'false', integral floats without '.0',
    lists and dicts as compact JSON with sorted keys.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def compute_hmac(message: str, secret: str, digestmod: Callable) -> str:
    """HMAC of a UTF-8 message, hex encoded."""
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        digestmod
    ).hexdigest()


def signatures_match(expected: str, provided: Optional[str]) -> bool:
    """Constant-time, case-insensitive comparison of two hex digests."""
    if not provided:
        return False
    return hmac.compare_digest(
        expected.lower().encode("utf-8"),
        provided.strip().lower().encode("utf-8")
    )


class SignatureCodec:
    """
    Deterministic canonical encoding of a flat key->value map.

    Subclasses pin the gateway's escaping rule, digest, signed field set
    and empty-value policy.
    """

    gateway_id: str = ""
    digestmod: Callable = hashlib.sha256
    signature_fields: Sequence[str] = ("signature",)
    include_empty_default: bool = True

    def escape_key(self, key: str) -> str:
        return key

    def escape_value(self, value: str) -> str:
        return value

    def is_signed_field(self, key: str) -> bool:
        return key not in self.signature_fields

    def signable_params(self, raw_params: Mapping[str, Any]) -> Dict[str, Any]:
        """Strip signature fields, keeping only what the gateway signs."""
        return {k: v for k, v in raw_params.items() if self.is_signed_field(k)}

    def extract_signature(self, raw_params: Mapping[str, Any]) -> Optional[str]:
        for field in self.signature_fields:
            value = raw_params.get(field)
            if value:
                return str(value)
        return None

    def canonicalize(
        self,
        params: Mapping[str, Any],
        include_empty: Optional[bool] = None
    ) -> str:
        """
        Build the signable string: key=value pairs joined by '&'.

        Args:
            params: Flat parameter map (insertion order irrelevant)
            include_empty: Whether empty values participate; gateway default if None

        Returns:
            Canonical string, identical for any ordering of params
        """
        if include_empty is None:
            include_empty = self.include_empty_default

        pairs = []
        for key, value in params.items():
            rendered = stringify_value(value)
            if not include_empty and rendered == "":
                continue
            pairs.append((self.escape_key(key), self.escape_value(rendered)))

        pairs.sort(key=lambda pair: pair[0].encode("utf-8"))
        return "&".join(f"{key}={value}" for key, value in pairs)

    def sign(self, canonical: str, secret: str) -> str:
        """HMAC of the canonical string, hex encoded."""
        return compute_hmac(canonical, secret, self.digestmod)

    def sign_params(self, params: Mapping[str, Any], secret: str) -> str:
        """Canonicalize the signable subset of params and sign it."""
        return self.sign(self.canonicalize(self.signable_params(params)), secret)

    def verify(
        self,
        raw_params: Mapping[str, Any],
        provided_signature: Optional[str],
        secret: str
    ) -> bool:
        """
        Recompute the signature over raw_params and compare.

        Args:
            raw_params: Parameters exactly as received (signature may be present)
            provided_signature: Signature the gateway sent
            secret: Shared secret for this gateway

        Returns:
            True if the signature matches, False otherwise
        """
        if not secret or not provided_signature:
            return False
        expected = self.sign_params(raw_params, secret)
        return signatures_match(expected, provided_signature)


class VNPaySignatureCodec(SignatureCodec):
    """VNPay convention (HMAC-SHA512, '+' for spaces, vnp_* fields only)."""

    gateway_id = "vnpay"
    digestmod = hashlib.sha512
    signature_fields = ("vnp_SecureHash", "vnp_SecureHashType")
    include_empty_default = False

    def escape_key(self, key: str) -> str:
        return encode_uri_component(key)

    def escape_value(self, value: str) -> str:
        return encode_uri_component(value).replace("%20", "+")

    def is_signed_field(self, key: str) -> bool:
        return key.startswith("vnp_") and key not in self.signature_fields

    def sign_positional(self, fields: Iterable[Any], secret: str) -> str:
        """
        Sign the pipe-joined positional string used by the merchant API.

        Query and refund requests (and their responses) are not key=value
        encoded; field order is fixed by the API and values are not escaped.
        """
        message = "|".join(stringify_value(field) for field in fields)
        return compute_hmac(message, secret, self.digestmod)

    def verify_positional(
        self,
        fields: Iterable[Any],
        provided_signature: Optional[str],
        secret: str
    ) -> bool:
        if not secret or not provided_signature:
            return False
        return signatures_match(self.sign_positional(fields, secret), provided_signature)


class PayOSSignatureCodec(SignatureCodec):
    """PayOS convention (HMAC-SHA256, raw values, empty values signed)."""

    gateway_id = "payos"
    digestmod = hashlib.sha256
    signature_fields = ("signature",)
    include_empty_default = True

    def signable_params(self, raw_params: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Unwrap the webhook envelope.

        Webhooks arrive as {"code", "desc", "success", "data": {...},
        "signature"}; only the fields inside data are signed. Return-URL
        query strings are flat and signed as-is minus the signature.
        """
        data = raw_params.get("data")
        if isinstance(data, Mapping):
            return dict(data)
        return super().signable_params(raw_params)


vnpay_codec = VNPaySignatureCodec()
payos_codec = PayOSSignatureCodec()
