"""Quickstart examples for aumai-toolrouter.

Indexes a small tool catalog with a real sentence-transformers model, routes
a few requests, and invokes the best match through a toy tool server.

The first run downloads the embedding model, so install the extra first:

    pip install "aumai-toolrouter[embeddings]"
    python examples/quickstart.py
"""

import asyncio
from collections.abc import Callable
from typing import Any

from aumai_toolrouter.config import load_settings
from aumai_toolrouter.core import CosineSimilarity
from aumai_toolrouter.logging import configure_logging
from aumai_toolrouter.models import McpStatus, MessageType, ModelProgress
from aumai_toolrouter.session import SessionController, SessionSnapshot


# ---------------------------------------------------------------------------
# Shared fixture: a catalog spread over three tool servers
# ---------------------------------------------------------------------------

CATALOG: dict[str, list[dict[str, Any]]] = {
    "memory": [
        {"name": "store", "description": "Store a piece of information in long-term memory."},
        {"name": "recall", "description": "Recall previously stored information from memory."},
    ],
    "filesystem": [
        {
            "name": "readFile",
            "description": "Read the contents of a file from the local filesystem.",
            "inputSchema": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Absolute path"}},
            },
        },
        {"name": "writeFile", "description": "Write text data to a file on disk."},
    ],
    "web": [
        {"name": "fetchUrl", "description": "Make an HTTP GET request and return the response body."},
        {"name": "sendEmail", "description": "Send an email message to a recipient."},
    ],
}


async def toy_invoke(server_id: str, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
    """Pretend tool server that echoes what it was asked to do."""
    return {"server": server_id, "tool": tool_name, "args": args, "status": "ok"}


def _model_status_printer() -> Callable[[SessionSnapshot], None]:
    """Print the model status whenever it changes."""
    last: list[ModelProgress] = []

    def on_snapshot(snapshot: SessionSnapshot) -> None:
        progress = snapshot.model_status
        if last and last[-1] == progress:
            return
        last.append(progress)
        percent = f" {round(progress.progress * 100)}%" if progress.progress is not None else ""
        print(f"  [model] {progress.status.value}{percent} {progress.message or ''}")

    return on_snapshot


# ---------------------------------------------------------------------------
# Demo 1: Indexing the catalog
# ---------------------------------------------------------------------------


async def demo_indexing(session: SessionController) -> None:
    print("\n--- Demo 1: Indexing ---")
    session.set_mcp_status(McpStatus.STARTING)
    session.set_mcp_status(McpStatus.READY)

    stats = await session.update_catalog(CATALOG)
    print(f"Indexed {stats.indexed_count} of {stats.total_count} tools with {session.index.model_id}")
    print(f"Embedding dimensions: {session.index.dimension}")


# ---------------------------------------------------------------------------
# Demo 2: Routing requests
# ---------------------------------------------------------------------------


async def demo_routing(session: SessionController) -> None:
    print("\n--- Demo 2: Routing ---")
    for query in ("save this data", "what did I tell you yesterday?", "download a web page"):
        result = await session.router.route(query, similarity_threshold=0.3)
        print(f"Query: '{query}'")
        if not result.matches:
            print("  no match")
        for rank, match in enumerate(result.matches, start=1):
            print(f"  Rank {rank}: [{match.similarity:.4f}] {match.tool_name} ({match.server_id})")


# ---------------------------------------------------------------------------
# Demo 3: The chat transcript
# ---------------------------------------------------------------------------


async def demo_transcript(session: SessionController) -> None:
    print("\n--- Demo 3: Transcript ---")
    await session.handle_submit("please write these notes to a file")
    await session.execute_tool("writeFile", {"path": "/tmp/notes.txt", "content": "hello"})

    for message in session.messages:
        label = message.tool_name if message.type is MessageType.TOOL else message.type.value
        print(f"[{message.id}] {label}: {message.content}")


# ---------------------------------------------------------------------------
# Demo 4: Cosine similarity on stored vectors
# ---------------------------------------------------------------------------


def demo_similarity(session: SessionController) -> None:
    print("\n--- Demo 4: Cosine Similarity ---")
    store = session.index.get("store")
    recall = session.index.get("recall")
    email = session.index.get("sendEmail")
    if store is None or recall is None or email is None:
        print("  tools missing from the index")
        return
    print(f"Cosine(store, recall)    = {CosineSimilarity.compute(store.vector, recall.vector):.4f}")
    print(f"Cosine(store, sendEmail) = {CosineSimilarity.compute(store.vector, email.vector):.4f}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run() -> None:
    settings = load_settings(log_level="WARNING")
    configure_logging(level=settings.log_level)

    async with SessionController.from_settings(settings, invoke=toy_invoke) as session:
        unsubscribe = session.subscribe(_model_status_printer())
        await demo_indexing(session)
        unsubscribe()
        await demo_routing(session)
        await demo_transcript(session)
        demo_similarity(session)


def main() -> None:
    """Run all aumai-toolrouter quickstart demos."""
    print("=== aumai-toolrouter Quickstart ===")
    asyncio.run(run())
    print("\nAll demos completed successfully.")


if __name__ == "__main__":
    main()
