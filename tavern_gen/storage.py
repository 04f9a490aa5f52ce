"""Lore book storage: one JSON file per book, cached after first load."""

import json
import logging
import re
import unicodedata
from pathlib import Path

from pydantic import ValidationError

from tavern_gen.models import LoreBook

logger = logging.getLogger(__name__)


def slugify(title: str) -> str:
    """Convert a title to a filesystem-safe slug.

    "Kingdom of Aster" → "kingdom-of-aster"
    """
    text = unicodedata.normalize("NFKD", title)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)  # strip apostrophes/quotes before hyphenation
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


class Storage:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self._cache: dict[str, LoreBook] = {}
        self.books_dir.mkdir(parents=True, exist_ok=True)

    @property
    def books_dir(self) -> Path:
        return self.data_dir / "lorebooks"

    def _book_path(self, name: str) -> Path:
        return self.books_dir / f"{slugify(name)}.json"

    def get_book(self, name: str) -> LoreBook | None:
        """Load a book by name. Returns None if missing or unreadable."""
        if name in self._cache:
            return self._cache[name]
        path = self._book_path(name)
        if not path.is_file():
            return None
        try:
            book = LoreBook.model_validate(json.loads(path.read_text()))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("lore book %r at %s is invalid: %s", name, path, e)
            return None
        self._cache[name] = book
        return book

    def save_book(self, book: LoreBook) -> None:
        """Write a book and refresh the cache."""
        self._book_path(book.name).write_text(book.model_dump_json(indent=2))
        self._cache[book.name] = book

    def delete_book(self, name: str) -> bool:
        self._cache.pop(name, None)
        path = self._book_path(name)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_books(self) -> list[str]:
        """Book names, sorted."""
        names = []
        for path in sorted(self.books_dir.glob("*.json")):
            try:
                names.append(json.loads(path.read_text())["name"])
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning("skipping unreadable lore book %s: %s", path, e)
        return sorted(names)
