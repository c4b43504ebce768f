from __future__ import annotations

import logging

from smart_expense.db import PersistenceError, PersistenceErrorKind
from smart_expense.repository import CategoryRecord, CategoryStore

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_ICON = "📦"
DEFAULT_CATEGORY_COLOR = "#6B7280"


def find_or_create_category(store: CategoryStore, user_id: int, name: str) -> CategoryRecord:
    """Return the category matching ``name`` case-insensitively, creating it if absent.

    Global categories and the user's own are both searched. New categories are
    owned by the user and get the default icon and color.
    """
    trimmed_name = name.strip()
    existing = store.find_by_name(user_id, trimmed_name)
    if existing:
        return existing

    try:
        created = store.create(
            user_id,
            name=trimmed_name,
            icon=DEFAULT_CATEGORY_ICON,
            color=DEFAULT_CATEGORY_COLOR,
        )
    except PersistenceError as exc:
        if exc.kind is not PersistenceErrorKind.UNIQUE_VIOLATION:
            raise
        # created concurrently by another request
        existing = store.find_by_name(user_id, trimmed_name)
        if existing is None:
            raise
        return existing

    logger.info("Created category %r for user %s", trimmed_name, user_id)
    return created
