"""Media URL validation for overlay payloads"""
import logging
import re
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Plain http is only accepted from these hosts (and their subdomains)
TRUSTED_HTTP_DOMAINS = (
    "kubi.com",
    "api.kubi.com",
    "cdn.kubi.com",
    "storage.googleapis.com",
    "s3.amazonaws.com",
    "cloudinary.com",
    "imgur.com",
)

YOUTUBE_ID = re.compile(r"^.*(youtu\.be/|v/|u/\w/|embed/|watch\?v=|&v=)([^#&?]*).*")


def is_valid_media_url(url: Optional[str]) -> bool:
    if not url or not isinstance(url, str):
        return False

    if url.startswith("data:"):
        header = url[5:].split(",", 1)[0]
        mime_type = header.split(";", 1)[0]
        return mime_type.startswith("image/")

    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    if parsed.scheme == "https":
        return bool(parsed.netloc)
    if parsed.scheme == "http":
        host = (parsed.hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in TRUSTED_HTTP_DOMAINS)
    return False


def sanitize_media_url(url: Optional[str]) -> str:
    """The URL if safe to embed in an overlay, otherwise an empty string"""
    if not url:
        return ""
    if is_valid_media_url(url):
        return url
    logger.warning(f"Rejected media URL: {url}")
    return ""


def youtube_video_id(url: Optional[str]) -> Optional[str]:
    """11 character video id, or None if url is not a YouTube link"""
    if not url:
        return None
    match = YOUTUBE_ID.match(url)
    if match and len(match.group(2)) == 11:
        return match.group(2)
    return None
