import re

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*://")
_URL_SUFFIX_RE = re.compile(r"[/?#]")


def normalize_domain(value) -> str:
    """Reduce a pasted hostname or URL to a bare lowercase domain.

    Strips the scheme, anything from the first '/', '?' or '#', and the
    leading 'www.' so blocking the base domain also covers www.*.
    Returns "" for empty or non-string input.
    """
    if not value or not isinstance(value, str):
        return ""
    domain = value.strip().lower()
    domain = _SCHEME_RE.sub("", domain)
    domain = _URL_SUFFIX_RE.split(domain, maxsplit=1)[0].strip()
    # Repeated so that normalizing twice is a no-op
    while domain.startswith("www."):
        domain = domain[4:].strip()
    return domain
