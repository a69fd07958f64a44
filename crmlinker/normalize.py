import re
from typing import List, Optional, Tuple
from urllib.parse import urlparse

_STRIP_CHARS = re.compile(r"[\s.,/#!$%^&*;:{}=\-_`~()']")
_SCHEME_WWW = re.compile(r"^(https?://)?(www\.)?")
_NON_DIGITS = re.compile(r"\D")

MIN_PHONE_DIGITS = 7


def normalize_text(s: Optional[str]) -> str:
    if not s:
        return ""
    return _STRIP_CHARS.sub("", s.lower()).strip()


def normalize_host(url: Optional[str]) -> str:
    """Reduce a URL (or something that looks like one) to its bare hostname.

    Parse failures fall back to plain string surgery, so this never raises.
    """
    if not url:
        return ""
    url = url.strip()
    try:
        parsed = urlparse(url)
        if parsed.scheme and parsed.netloc and parsed.hostname:
            host = parsed.hostname
            return host[4:] if host.startswith("www.") else host
    except ValueError:
        pass
    return _SCHEME_WWW.sub("", url.lower()).split("/")[0]


def host_forms(host: str) -> List[str]:
    """Return the host and each parent domain that keeps at least two labels.

    shop.acme.com -> ["shop.acme.com", "acme.com"]
    """
    if not host:
        return []
    labels = host.split(".")
    if len(labels) < 2:
        return [host]
    return [".".join(labels[i:]) for i in range(len(labels) - 1)]


def phone_digits(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return _NON_DIGITS.sub("", phone)


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    """Digits-only comparison; the shorter number must be a suffix of the longer."""
    da, db = phone_digits(a), phone_digits(b)
    if len(da) < MIN_PHONE_DIGITS or len(db) < MIN_PHONE_DIGITS:
        return False
    shorter, longer = sorted((da, db), key=len)
    return longer.endswith(shorter)


def dedup_key(website: Optional[str], address: Optional[str]) -> Tuple[str, str]:
    return normalize_host(website), normalize_text(address)
