"""
Data loader — reads the private data directory and makes it available
to the responder.

Layout:
    data/
      persona.yaml    ← persona definition (optional, defaults apply)
      rules.yaml      ← `rules:` keyword overrides + `spam:` filters
      notes/          ← any configured source: a file or a directory of files
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from config.settings import ConfigError
from models.schemas import DataChunk, DataSource, Persona, Rule, SpamRule

logger = structlog.get_logger()


@dataclass
class LoadedData:
    persona: Persona = field(default_factory=Persona)
    rules: list[Rule] = field(default_factory=list)
    spam_rules: list[SpamRule] = field(default_factory=list)
    chunks: list[DataChunk] = field(default_factory=list)


def _read_yaml(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def load_data(data_dir: str, sources: list[DataSource] = None) -> LoadedData:
    """Load persona, rules and knowledge chunks from the data directory."""
    root = Path(data_dir)
    if not root.is_dir():
        raise ConfigError(
            f"Data directory not found at {root}. "
            f"Copy data.example/ to data/ and customize it."
        )

    persona_path = root / "persona.yaml"
    rules_path = root / "rules.yaml"

    try:
        persona = Persona(**_read_yaml(persona_path)) if persona_path.exists() else Persona()
        raw_rules = _read_yaml(rules_path) if rules_path.exists() else {}
        rules = [Rule(**r) for r in raw_rules.get("rules") or []]
        spam_rules = [SpamRule(**r) for r in raw_rules.get("spam") or []]
    except ValidationError as e:
        raise ConfigError(f"Invalid data in {root}: {e}") from e

    chunks = load_sources(root, sources or [])

    logger.info("data_loaded",
                data_dir=str(root),
                persona=persona.name,
                rules=len(rules),
                spam_rules=len(spam_rules),
                chunks=len(chunks))
    return LoadedData(persona=persona, rules=rules, spam_rules=spam_rules, chunks=chunks)


def load_sources(root: Path, sources: list[DataSource]) -> list[DataChunk]:
    """Read every configured source into chunks. Missing sources are skipped."""
    chunks: list[DataChunk] = []

    for source in sources:
        source_path = root / source.path
        if not source_path.exists():
            logger.warning("data_source_missing", source=source.name, path=str(source_path))
            continue

        if source_path.is_dir():
            files = sorted(
                p for p in source_path.iterdir()
                if p.is_file() and not p.name.startswith(".")
            )
        else:
            files = [source_path]

        for file in files:
            content = file.read_text(encoding="utf-8").strip()
            if not content:
                continue
            chunks.append(DataChunk(
                source=source.name,
                content=content,
                metadata={
                    "file": file.name,
                    "format": source.format,
                    "description": source.description,
                },
            ))

    return chunks
