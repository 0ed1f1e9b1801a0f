"""Text embedding: oracle first, deterministic hashing embedding as fallback."""

from __future__ import annotations

import asyncio
import logging
import math

from medintel.agents.oracle import Oracle, OracleError
from medintel.config import FALLBACK_EMBEDDING_DIMENSIONS, settings

logger = logging.getLogger(__name__)

HASH_EMBEDDING_DIMENSIONS = FALLBACK_EMBEDDING_DIMENSIONS


def stable_hash(token: str) -> int:
    """32-bit ``h * 31 + code point`` string hash, absolute value.

    Unlike ``hash()`` this does not depend on PYTHONHASHSEED.
    """
    h = 0
    for char in token:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def hashing_embedding(text: str, dimensions: int = HASH_EMBEDDING_DIMENSIONS) -> list[float]:
    """Bag-of-tokens embedding, L2-normalized. Empty text yields the zero vector."""
    vector = [0.0] * dimensions
    for token in text.lower().split():
        vector[stable_hash(token) % dimensions] += 1.0

    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return vector
    return [v / magnitude for v in vector]


class Embedder:
    """Embeds text through the oracle, falling back to ``hashing_embedding``."""

    def __init__(
        self,
        oracle: Oracle,
        dimensions: int = HASH_EMBEDDING_DIMENSIONS,
        timeout: float | None = None,
    ) -> None:
        self.oracle = oracle
        self.dimensions = dimensions
        self.timeout = timeout if timeout is not None else settings.oracle_timeout_seconds

    def _usable(self, vector: object) -> bool:
        return (
            isinstance(vector, list)
            and len(vector) == self.dimensions
            and all(isinstance(v, (int, float)) and math.isfinite(v) for v in vector)
        )

    async def embed(self, text: str) -> list[float]:
        try:
            async with asyncio.timeout(self.timeout):
                vector = await self.oracle.embed(text)
        except OracleError as e:
            logger.debug("Oracle embedding unavailable (%s), using hashing fallback", e.code)
            return hashing_embedding(text, self.dimensions)
        except TimeoutError:
            logger.warning("Oracle embedding timed out after %.1fs, using fallback", self.timeout)
            return hashing_embedding(text, self.dimensions)
        except Exception:
            logger.exception("Oracle embedding failed, using hashing fallback")
            return hashing_embedding(text, self.dimensions)

        if not self._usable(vector):
            logger.warning(
                "Oracle embedding unusable (expected %d finite floats), using fallback",
                self.dimensions,
            )
            return hashing_embedding(text, self.dimensions)
        return [float(v) for v in vector]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed texts concurrently, preserving order."""
        logger.debug("Embedding batch of %d texts", len(texts))
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))
