"""Pytest configuration and fixtures.

The model provider is replaced by an httpx MockTransport; FAISS and SQLite run
for real on small vectors inside tmp_path.
"""
import asyncio
import hashlib
import json
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from article_rag.db import Database
from article_rag.llm_client import ArkClient
from article_rag.rag.chunker import TextChunker
from article_rag.rag.embeddings import EmbeddingGateway
from article_rag.rag.ingest import IngestPipeline
from article_rag.rag.store_faiss import FAISSVectorStore

DIM = 4
BASE_URL = "https://ark.test/api/v3"


def hashed_vector(text: str, dim: int = DIM) -> List[float]:
    """Deterministic pseudo-embedding for a text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i] / 255.0 for i in range(dim)]


class FakeProvider:
    """In-memory stand-in for the embedding and responses endpoints.

    shape:
        "list"      - data is a list with index fields, in input order
        "reversed"  - data is a list with index fields, in reverse order
        "no_index"  - data is a list without index fields
        "zero_index" - data is a list where every index is 0
        "object"    - data is a single object (no list)
    """

    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.shape = "list"
        self.embed_fn: Callable[[str], List[float]] = lambda text: hashed_vector(
            text, self.dim
        )
        self.embedding_calls: List[List[str]] = []
        self.generation_calls: List[Dict] = []
        self.fail_embedding_call: Optional[int] = None
        self.embedding_payload: Optional[Dict] = None
        self.answer_text = "stub answer"
        self.responses_payload: Optional[Dict] = None
        self.responses_status = 200
        self.gate: Optional[asyncio.Event] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path.endswith("/embeddings/multimodal"):
            return await self._embeddings(body)
        if request.url.path.endswith("/responses"):
            return self._responses(body)
        return httpx.Response(404, json={"error": {"message": "unknown path"}})

    async def _embeddings(self, body: Dict) -> httpx.Response:
        texts = [item["text"] for item in body["input"]]
        self.embedding_calls.append(texts)

        if self.gate is not None:
            await self.gate.wait()

        if self.fail_embedding_call == len(self.embedding_calls):
            return httpx.Response(500, text="upstream exploded")
        if self.embedding_payload is not None:
            return httpx.Response(200, json=self.embedding_payload)

        items = [
            {"embedding": self.embed_fn(text), "index": i}
            for i, text in enumerate(texts)
        ]
        if self.shape == "reversed":
            items.reverse()
        elif self.shape == "no_index":
            for item in items:
                del item["index"]
        elif self.shape == "zero_index":
            for item in items:
                item["index"] = 0
        elif self.shape == "object":
            return httpx.Response(200, json={"data": items[0]})

        return httpx.Response(200, json={"data": items})

    def _responses(self, body: Dict) -> httpx.Response:
        self.generation_calls.append(body)
        if self.responses_status != 200:
            return httpx.Response(self.responses_status, text="generation failed")
        if self.responses_payload is not None:
            return httpx.Response(200, json=self.responses_payload)
        return httpx.Response(
            200,
            json={
                "output": [
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": self.answer_text}],
                    }
                ]
            },
        )

    @property
    def last_prompt(self) -> str:
        return self.generation_calls[-1]["input"][0]["content"][0]["text"]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(provider):
    return ArkClient(
        base_url=BASE_URL,
        api_key="test-key",
        embedding_model="embed-test",
        chat_model="chat-test",
        timeout=5.0,
        transport=provider.transport(),
    )


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.sqlite")
    database.init_database()
    return database


@pytest.fixture
def vector_store(db, tmp_path):
    store = FAISSVectorStore(
        db,
        index_dir=tmp_path / "index",
        dimension=DIM,
        nlist=2,
        nprobe=2,
        train_size=1000,
    )
    store.init_or_load()
    return store


@pytest.fixture
def gateway(client):
    return EmbeddingGateway(client, batch_size=10)


@pytest.fixture
def pipeline(db, gateway, vector_store):
    return IngestPipeline(
        db,
        gateway,
        vector_store,
        chunker=TextChunker(chunk_size=800, chunk_overlap=100),
    )


class EventLog:
    """Progress observer that records every stage event."""

    def __init__(self):
        self.events = []

    async def on_stage(self, event):
        self.events.append(event)

    @property
    def progress(self):
        return [event.progress for event in self.events]


@pytest.fixture
def event_log(pipeline):
    log = EventLog()
    pipeline.observers.append(log)
    return log
