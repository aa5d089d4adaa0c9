import logging
from typing import List

from cityfix.core.config import CONFIG
from cityfix.core.errors import ValidationError
from cityfix.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

CATEGORIES_DOC = "categories"


class ConfigService:
    """Admin-managed lists stored as single documents in the `config` collection."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_categories(self) -> List[str]:
        doc = await self.store.get(CONFIG, CATEGORIES_DOC)
        return list(doc.get("list", [])) if doc else []

    async def set_categories(self, categories: List[str]) -> List[str]:
        cleaned = []
        for name in categories:
            name = (name or "").strip()
            if name and name not in cleaned:
                cleaned.append(name)
        if not cleaned:
            raise ValidationError("Category list cannot be empty")

        if not await self.store.update(CONFIG, CATEGORIES_DOC, {"list": cleaned}):
            await self.store.insert(CONFIG, {"_id": CATEGORIES_DOC, "list": cleaned})
        logger.info(f"📝 Category list updated ({len(cleaned)} entries)")
        return cleaned

    async def ensure_category(self, category: str):
        """Reject categories outside the configured list (any value passes while the list is empty)."""
        categories = await self.get_categories()
        if categories and category not in categories:
            raise ValidationError(f"Unknown category '{category}'")
