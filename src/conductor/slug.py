from __future__ import annotations

import hashlib
import re

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+|\.{2,}")


def feature_key(feature_id: str) -> str:
    """Return a filesystem and ref safe key for a feature ID.

    IDs that are already safe map to themselves; anything else gets a short
    hash suffix so two IDs that slug to the same text stay distinct.
    """
    slug = _UNSAFE.sub("-", feature_id).strip("-.") or "feature"
    if slug == feature_id:
        return slug
    digest = hashlib.sha1(feature_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"
