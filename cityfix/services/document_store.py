"""
Document store boundary used by the lifecycle core.

The core only needs point reads, partial-merge updates, equality queries and
inserts; anything implementing DocumentStore can back it. Filters use the
MongoDB query shape restricted to equality, `$in` and `$ne`.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

Document = Dict[str, Any]
SortSpec = List[Tuple[str, int]]


class DocumentStore(ABC):

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def insert(self, collection: str, document: Document) -> str:
        """Insert a document and return its id (`_id` is generated when absent)."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Document,
        expected: Optional[Document] = None,
    ) -> bool:
        """
        Merge `fields` into one document in a single write.

        When `expected` is given the write only applies if the stored document
        still matches it. Returns False when nothing matched.
        """

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Optional[Document] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Document]:
        pass

    @abstractmethod
    async def count(self, collection: str, filters: Optional[Document] = None) -> int:
        pass
