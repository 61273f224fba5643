from urllib.parse import urlsplit, urlunsplit


def redact_url(url: str) -> str:
    """Drop query and fragment from a URL so logs do not leak tokens carried in them."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparsable url>"
    if not parts.query and not parts.fragment:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "****", ""))
