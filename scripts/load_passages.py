#!/usr/bin/env python3
"""Load pre-chunked campaign passages (JSONL) into the passage store.

Each line is a passage object (chunk_id, campaign_id, resource_id, text, and
optionally file_name, page_number, section_heading, tags, embedding). Lines
without an embedding are encoded with the configured embedding model.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.lorekeeper.embeddings import embed_texts
from src.lorekeeper.models import Passage
from src.lorekeeper.vector_store import VectorStore


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: load_passages.py <passages.jsonl>")
        sys.exit(1)

    path = Path(sys.argv[1])
    if not path.exists():
        print(f"Error: {path} does not exist")
        sys.exit(1)

    passages: list[Passage] = []
    embeddings: list[list[float] | None] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            row = json.loads(line)
            embeddings.append(row.pop("embedding", None))
            passages.append(Passage(**row))

    missing = [i for i, emb in enumerate(embeddings) if emb is None]
    if missing:
        encoded = embed_texts([passages[i].text for i in missing])
        for i, vector in zip(missing, encoded):
            embeddings[i] = vector.tolist()

    store = VectorStore()
    store.add_passages(passages, embeddings)
    print(f"Loaded {len(passages)} passages from {path} ({len(missing)} embedded locally)")


if __name__ == "__main__":
    main()
