"""
schema.org NewsArticle structured data for web artifacts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit


def _origin(url: str) -> str:
    parts = urlsplit(url or "")
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    return ""


def _absolute(url: Optional[str], origin: str) -> Optional[str]:
    if not url:
        return None
    if url.lower().startswith(("http://", "https://")) or not origin:
        return url
    return origin.rstrip("/") + "/" + url.lstrip("/")


def _iso(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def canonical_url(slug: str, domain: Optional[str]) -> str:
    """``https://<domain>/articles/<slug>``, or a relative path without a domain."""
    if domain:
        host = domain.strip().rstrip("/")
        if not host.lower().startswith(("http://", "https://")):
            host = f"https://{host}"
        return f"{host}/articles/{slug}"
    return f"/articles/{slug}"


def build_news_article_json_ld(
    headline: str,
    canonical: str,
    description: Optional[str] = None,
    image_urls: Optional[List[str]] = None,
    language_code: str = "en",
    date_published: Optional[str] = None,
    date_modified: Optional[str] = None,
    author_name: Optional[str] = None,
    publisher_name: str = "",
    publisher_logo_url: str = "",
    keywords: Optional[List[str]] = None,
    article_section: Optional[str] = None,
    word_count: Optional[int] = None,
    is_accessible_for_free: bool = True,
) -> Dict[str, Any]:
    """Build a NewsArticle JSON-LD dict.

    Relative image and logo URLs are resolved against the canonical URL's
    origin.  Headline is capped at 110 characters and description at 160.
    Author falls back to ``"Reporter"``.
    """
    origin = _origin(canonical)
    images = [u for u in (_absolute(u, origin) for u in (image_urls or [])) if u]

    article: Dict[str, Any] = {
        "@context": "https://schema.org",
        "@type": "NewsArticle",
        "headline": str(headline)[:110],
        "url": canonical,
        "mainEntityOfPage": {"@type": "WebPage", "@id": canonical},
        "inLanguage": language_code or "en",
        "isAccessibleForFree": is_accessible_for_free,
    }
    if description:
        article["description"] = str(description)[:160]
    if len(images) == 1:
        article["image"] = {"@type": "ImageObject", "url": images[0]}
    elif images:
        article["image"] = images

    published = _iso(date_published)
    modified = _iso(date_modified)
    if published:
        article["datePublished"] = published
    if modified:
        article["dateModified"] = modified

    article["author"] = {"@type": "Person", "name": (author_name or "").strip() or "Reporter"}

    if publisher_name:
        publisher: Dict[str, Any] = {"@type": "Organization", "name": publisher_name}
        logo = _absolute(publisher_logo_url, origin)
        if logo:
            publisher["logo"] = {"@type": "ImageObject", "url": logo}
        article["publisher"] = publisher

    if keywords:
        article["keywords"] = ", ".join(k for k in keywords if k)
    if article_section:
        article["articleSection"] = article_section
    if word_count:
        article["wordCount"] = int(word_count)
    return article
