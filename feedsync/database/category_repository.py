"""
Category repository - the catalogue of news categories (filter contexts).
"""

from .connection import DatabaseConnection
from .converters import row_to_category
from .models import Category

# (key, display name) in default display order
DEFAULT_CATEGORIES = [
    ("top", "推荐"),
    ("guonei", "国内"),
    ("guoji", "国际"),
    ("yule", "娱乐"),
    ("tiyu", "体育"),
    ("junshi", "军事"),
    ("keji", "科技"),
    ("caijing", "财经"),
    ("youxi", "游戏"),
    ("qiche", "汽车"),
    ("jiankang", "健康"),
]


class CategoryRepository:
    """Repository for category operations."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def seed_defaults(self) -> int:
        """Insert the default categories if the table is empty. Returns count inserted."""
        with self._db.conn() as conn:
            existing = conn.execute("SELECT COUNT(*) as cnt FROM categories").fetchone()["cnt"]
            if existing:
                return 0
            conn.executemany(
                "INSERT INTO categories (key, name, sort_order, enabled) VALUES (?, ?, ?, 1)",
                [(key, name, order) for order, (key, name) in enumerate(DEFAULT_CATEGORIES)]
            )
            return len(DEFAULT_CATEGORIES)

    def get(self, key: str) -> Category | None:
        with self._db.conn() as conn:
            row = conn.execute("SELECT * FROM categories WHERE key = ?", (key,)).fetchone()
            return row_to_category(row) if row else None

    def get_all(self, enabled_only: bool = False) -> list[Category]:
        query = "SELECT * FROM categories"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY sort_order, key"
        with self._db.conn() as conn:
            rows = conn.execute(query).fetchall()
            return [row_to_category(row) for row in rows]

    def set_enabled(self, key: str, enabled: bool) -> bool:
        """Enable/disable a category. Returns False if not found."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                "UPDATE categories SET enabled = ? WHERE key = ?", (enabled, key)
            )
            return cursor.rowcount > 0

    def reorder(self, keys: list[str]):
        """Set display order from a list of keys. Unlisted categories keep their relative order after them."""
        with self._db.conn() as conn:
            current = [row["key"] for row in conn.execute(
                "SELECT key FROM categories ORDER BY sort_order, key"
            ).fetchall()]
            ordered = [k for k in keys if k in current]
            ordered += [k for k in current if k not in ordered]
            conn.executemany(
                "UPDATE categories SET sort_order = ? WHERE key = ?",
                [(index, key) for index, key in enumerate(ordered)]
            )
