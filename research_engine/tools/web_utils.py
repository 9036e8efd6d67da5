from __future__ import annotations

import re
from urllib.parse import urlparse


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Host name without a leading `www.`, or `Unknown` when unparsable."""
    try:
        netloc = urlparse(url).netloc
    except ValueError:
        return "Unknown"
    return re.sub(r"^www\.", "", netloc) or "Unknown"


def title_from_url(url: str) -> str:
    """Readable title guessed from the last path segment of a URL."""
    try:
        segments = [s for s in urlparse(url).path.split("/") if s]
    except ValueError:
        return ""
    if not segments:
        return ""
    slug = re.sub(r"\.(html?|php|aspx?)$", "", segments[-1], flags=re.IGNORECASE)
    words = re.sub(r"[-_]", " ", slug).split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def favicon_url(domain: str) -> str:
    return f"https://www.google.com/s2/favicons?domain={domain}&sz=32"
