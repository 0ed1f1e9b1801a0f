"""CLI script to load a folder of text medical records and query them.

Each ``.txt`` / ``.md`` file is one document. The file stem is the document
id; an optional ``YYYY-MM-DD_`` prefix sets the document date and a
``prescription``/``lab``/``test``/``bill`` word in the stem sets the category.

Usage:
    uv run python scripts/query_records.py --directory records/ --ask "How has my eGFR changed?"
    uv run python scripts/query_records.py --directory records/ --timeline
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import json
import sys
from pathlib import Path

from medintel.agents.oracle import NullOracle, get_oracle
from medintel.models.documents import DocumentCategory, DocumentRecord
from medintel.services.knowledge_engine import MedicalKnowledgeEngine

# Stem keyword -> document category
CATEGORY_KEYWORDS: dict[str, DocumentCategory] = {
    "prescription": "prescription",
    "lab": "lab_report",
    "test": "test_report",
    "bill": "bill",
}


def record_from_file(path: Path) -> DocumentRecord:
    stem = path.stem
    try:
        date = datetime.date.fromisoformat(stem[:10])
    except ValueError:
        date = datetime.date.fromtimestamp(path.stat().st_mtime)

    category: DocumentCategory = "other"
    for keyword, value in CATEGORY_KEYWORDS.items():
        if keyword in stem.lower():
            category = value
            break

    content = path.read_text(encoding="utf-8")
    first_line = next((line.strip() for line in content.splitlines() if line.strip()), "")
    return DocumentRecord(
        id=stem,
        name=stem.replace("-", " ").replace("_", " ").title(),
        category=category,
        date=date,
        content=content,
        summary=first_line,
    )


async def run(args: argparse.Namespace) -> None:
    oracle = NullOracle() if args.offline else get_oracle()
    engine = MedicalKnowledgeEngine(oracle=oracle)
    corpus = engine.new_corpus()

    files = sorted([*args.directory.glob("*.txt"), *args.directory.glob("*.md")])
    if not files:
        print(f"No .txt or .md files found in {args.directory}")
        sys.exit(1)
    print(f"Found {len(files)} records")
    await engine.ingest_many(corpus, [record_from_file(f) for f in files])

    if args.timeline:
        for event in await engine.build_timeline(corpus):
            value = f" ({event.value})" if event.value else ""
            print(f"{event.date.isoformat()}  [{event.event_type}] {event.description}{value}")
    if args.ask:
        answer = await engine.answer(corpus, args.ask)
        print(f"\n{answer.answer}\n")
        print(f"Confidence: {answer.confidence:.2f}  Sources: {', '.join(answer.sources)}")
    if args.insights:
        insights = await engine.clinical_insights(corpus)
        print(json.dumps(insights.model_dump(), indent=2, default=str))


def main() -> None:
    parser = argparse.ArgumentParser(description="Query a folder of medical records")
    parser.add_argument("--directory", type=Path, required=True, help="Directory of records")
    parser.add_argument("--ask", type=str, default=None, help="Question to answer")
    parser.add_argument("--timeline", action="store_true", help="Print the medical timeline")
    parser.add_argument("--insights", action="store_true", help="Print clinical insights")
    parser.add_argument("--offline", action="store_true", help="Use deterministic fallbacks only")
    args = parser.parse_args()

    if not args.directory.exists():
        print(f"Error: Directory not found: {args.directory}")
        sys.exit(1)
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
