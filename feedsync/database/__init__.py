"""
Database module - SQLite storage for articles, page cursors and categories.

Uses repository pattern for better separation of concerns.
"""

from .connection import DatabaseConnection
from .models import Article, Category, PageCursor, UpsertResult
from .article_repository import ArticleRepository
from .cursor_repository import CursorRepository
from .category_repository import CategoryRepository, DEFAULT_CATEGORIES
from .database import Database

__all__ = [
    "Database",
    "DatabaseConnection",
    "Article",
    "Category",
    "PageCursor",
    "UpsertResult",
    "ArticleRepository",
    "CursorRepository",
    "CategoryRepository",
    "DEFAULT_CATEGORIES",
]
