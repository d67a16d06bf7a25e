"""Ingest a directory of learning materials into an existing knowledge base."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional, Sequence

import db
from errors import EduRagError
from knowledge_base import KnowledgeBaseService
from rag import load_learning_materials

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", help="File or directory with .md/.txt/.json materials")
    parser.add_argument(
        "--knowledge-base",
        required=True,
        help="Id of the knowledge base receiving the chunks",
    )
    parser.add_argument(
        "--user",
        required=True,
        help="Owner of the knowledge base (content is processed on their behalf)",
    )
    parser.add_argument(
        "--pattern",
        action="append",
        default=None,
        help="File suffix to include; repeatable (default: .md, .txt, .json)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the documents that would be ingested",
    )
    return parser


def ingest(
    path: str,
    knowledge_base_id: str,
    user_id: str,
    *,
    patterns: Optional[Sequence[str]] = None,
    service: Optional[KnowledgeBaseService] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    documents = load_learning_materials(path, tuple(patterns) if patterns else (".md", ".txt", ".json"))
    service = service or KnowledgeBaseService()
    per_source: Dict[str, int] = {}
    failed: List[Dict[str, str]] = []
    for document in documents:
        if dry_run:
            per_source[document.source] = 0
            continue
        try:
            chunks = service.process_content(knowledge_base_id, user_id, document.content, document.curriculum())
        except EduRagError as exc:
            # Missing or foreign knowledge bases fail every document the same way.
            if exc.kind in {"not_found", "unauthorized"}:
                raise
            logger.warning("Skipping %s: %s", document.source, exc.message)
            failed.append({"source": document.source, "error": exc.code})
            continue
        per_source[document.source] = len(chunks)
    return {
        "knowledge_base_id": knowledge_base_id,
        "documents": len(documents),
        "chunks_created": sum(per_source.values()),
        "per_source": per_source,
        "failed": failed,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = _build_parser().parse_args(argv)
    db.init()
    try:
        report = ingest(
            args.path,
            args.knowledge_base,
            args.user,
            patterns=args.pattern,
            dry_run=args.dry_run,
        )
    except EduRagError as exc:
        print(json.dumps({"error": exc.to_dict()}, indent=2), file=sys.stderr)
        return 1
    print(json.dumps(report, indent=2, sort_keys=True))
    return 0 if not report["failed"] else 2


if __name__ == "__main__":
    raise SystemExit(main())
