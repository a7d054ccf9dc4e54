"""Core logic for aumai-toolrouter: similarity and the in-memory tool index."""

from __future__ import annotations

from collections.abc import Iterator, Sequence

import numpy as np

from aumai_toolrouter.errors import IndexMismatchError
from aumai_toolrouter.models import IndexedEntry, ToolDescriptor

__all__ = ["CosineSimilarity", "ToolIndex", "build_tool_text"]


def build_tool_text(tool: ToolDescriptor) -> str:
    """Render *tool* as the text that gets embedded.

    Name, description and any published input parameters are combined so
    that the embedding sees everything a user might refer to.
    """
    lines = [
        f"Tool Name: {tool.name}",
        f"Description: {tool.description or 'No description'}",
    ]
    properties = (tool.input_schema or {}).get("properties")
    if isinstance(properties, dict) and properties:
        lines.append("Input Parameters:")
        for param_name, param_info in properties.items():
            info = param_info if isinstance(param_info, dict) else {}
            param_type = info.get("type", "any")
            param_desc = info.get("description", "No description")
            lines.append(f"- {param_name}: {param_type} - {param_desc}")
    return "\n".join(lines)


class CosineSimilarity:
    """Compute cosine similarity between two equal-length float vectors using numpy."""

    @staticmethod
    def compute(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
        """Return the cosine similarity between *vec_a* and *vec_b*.

        Args:
            vec_a: First vector.
            vec_b: Second vector.  Must have the same length as *vec_a*.

        Returns:
            A value in ``[-1, 1]``.  Returns 0.0 for empty vectors or when
            either vector has zero magnitude.

        Raises:
            ValueError: When the vectors have different lengths.
        """
        if len(vec_a) != len(vec_b):
            raise ValueError(
                f"Vector length mismatch: {len(vec_a)} vs {len(vec_b)}"
            )
        if len(vec_a) == 0:
            return 0.0

        arr_a = np.asarray(vec_a, dtype=np.float64)
        arr_b = np.asarray(vec_b, dtype=np.float64)

        norm_a = float(np.linalg.norm(arr_a))
        norm_b = float(np.linalg.norm(arr_b))

        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0

        score = float(np.dot(arr_a, arr_b) / (norm_a * norm_b))
        return max(-1.0, min(1.0, score))


class ToolIndex:
    """In-memory map of tool name to embedded entry, queried by brute-force cosine.

    All vectors in one index share a dimension and come from one model. The
    first upserted entry fixes both; :meth:`clear` releases them again so the
    index can be rebuilt for a different model.
    """

    def __init__(self) -> None:
        # dicts keep insertion order, which is the tie-break order for queries
        self._entries: dict[str, IndexedEntry] = {}
        self._dimension: int | None = None
        self._model_id: str | None = None

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def model_id(self) -> str | None:
        return self._model_id

    def upsert(self, entry: IndexedEntry) -> None:
        """Insert *entry*, or replace the entry with the same tool name.

        Raises:
            IndexMismatchError: When the vector length or model differs from
                the entries already indexed.
        """
        if self._entries:
            if len(entry.vector) != self._dimension:
                raise IndexMismatchError(
                    f"Vector for '{entry.tool_name}' has dimension {len(entry.vector)}, "
                    f"index holds dimension {self._dimension}"
                )
            if entry.model_id != self._model_id:
                raise IndexMismatchError(
                    f"Vector for '{entry.tool_name}' comes from model {entry.model_id!r}, "
                    f"index holds model {self._model_id!r}"
                )
        else:
            self._dimension = len(entry.vector)
            self._model_id = entry.model_id
        self._entries[entry.tool_name] = entry

    def query_top_k(
        self,
        query_vector: Sequence[float],
        k: int,
        min_similarity: float = -1.0,
    ) -> list[tuple[IndexedEntry, float]]:
        """Return up to *k* entries whose similarity to *query_vector* is at least *min_similarity*.

        Results are sorted by descending similarity; equal scores keep
        insertion order.

        Raises:
            ValueError: When *query_vector* does not match the index dimension.
        """
        if k <= 0 or not self._entries:
            return []
        if len(query_vector) != self._dimension:
            raise ValueError(
                f"Vector length mismatch: {len(query_vector)} vs {self._dimension}"
            )

        entries = list(self._entries.values())
        matrix = np.asarray([entry.vector for entry in entries], dtype=np.float64)
        query = np.asarray(query_vector, dtype=np.float64)

        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            scores = np.zeros(len(entries), dtype=np.float64)
        else:
            row_norms = np.linalg.norm(matrix, axis=1)
            denominators = row_norms * query_norm
            dots = matrix @ query
            scores = np.divide(
                dots, denominators, out=np.zeros_like(dots), where=denominators != 0.0
            )
            scores = np.clip(scores, -1.0, 1.0)

        # stable sort on the negated score keeps insertion order for ties
        order = np.argsort(-scores, kind="stable")
        results: list[tuple[IndexedEntry, float]] = []
        for position in order:
            score = float(scores[position])
            if score < min_similarity:
                break
            results.append((entries[position], score))
            if len(results) == k:
                break
        return results

    def clear(self) -> None:
        """Drop every entry and forget the dimension and model."""
        self._entries.clear()
        self._dimension = None
        self._model_id = None

    def get(self, tool_name: str) -> IndexedEntry | None:
        return self._entries.get(tool_name)

    def entries(self) -> list[IndexedEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._entries

    def __iter__(self) -> Iterator[IndexedEntry]:
        return iter(list(self._entries.values()))
