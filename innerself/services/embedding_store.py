"""
Embedding store: vectors of entry summaries for similarity retrieval.
"""

from typing import Any, Dict, List

from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.document_store import DocumentStoreError
from ..utils.logging_config import get_logger
from .repositories import EmbeddingRepository

logger = get_logger(__name__)


class EmbeddingStoreError(Exception):
    """Custom exception for embedding store errors."""
    pass


class EmbeddingStore:
    """Embeds short entry summaries and keeps them apart from the entity records."""

    def __init__(self, embed: BedrockEmbed, repository: EmbeddingRepository):
        self.embed = embed
        self.repository = repository

    def store_embedding(self, entry_id: str, text: str, metadata: Dict[str, Any]) -> None:
        """Embed ``text`` and persist it under ``entry_id``.

        Args:
            entry_id: Raw entry the text summarizes
            text: Title and content of the extraction
            metadata: category, mood, date, people and persona

        Raises:
            EmbeddingStoreError: If embedding or persistence fails
        """
        try:
            vector = self.embed.embed_document(text)
            self.repository.put(entry_id, vector, text, metadata)
        except (BedrockEmbedError, DocumentStoreError) as e:
            logger.error(f'Failed to store embedding for entry {entry_id}: {e}')
            raise EmbeddingStoreError(f'Embedding store failed: {e}')

        logger.debug(f'Stored embedding for entry {entry_id}')

    def search_similar(self, text: str, top_k: int = 5) -> List[Dict[str, Any]]:
        """Return up to ``top_k`` stored summaries closest to ``text``."""
        if top_k <= 0 or not text.strip():
            return []
        try:
            vector = self.embed.embed_query(text)
            results = self.repository.nearest(vector, top_k)
        except (BedrockEmbedError, DocumentStoreError) as e:
            logger.warning(f'Similarity search failed: {e}')
            raise EmbeddingStoreError(f'Similarity search failed: {e}')

        return [{
            'entry_id': r['document'].get('entry_id', r['id']),
            'content_text': r['document'].get('content_text', ''),
            'score': r['score'],
            'metadata': r['document'].get('metadata') or {},
        } for r in results]

    def delete_embedding(self, entry_id: str) -> bool:
        """Drop the vector for an entry so it stops showing up as context."""
        try:
            return self.repository.delete(entry_id)
        except DocumentStoreError as e:
            logger.error(f'Failed to delete embedding for entry {entry_id}: {e}')
            raise EmbeddingStoreError(f'Embedding delete failed: {e}')
