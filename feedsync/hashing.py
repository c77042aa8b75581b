"""
Content hashing for change detection.

The hash covers only remote-origin list fields, so it changes when the server
changes an article and stays put when local state (read flag, detail body)
changes.
"""

import hashlib
import json
from datetime import timezone

from .database.models import Article


def compute_content_hash(article: Article) -> str:
    # An estimated date is the fetch time and differs on every fetch
    if article.published_at and not article.published_estimated:
        published = article.published_at.astimezone(timezone.utc).isoformat()
    else:
        published = None
    payload = {
        "id": article.id,
        "title": article.title,
        "summary": article.summary,
        "published_at": published,
        "category": article.category,
        "author": article.author,
        "source": article.source,
        "url": article.url,
        "image_url": article.image_url,
        "version": article.version,
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
