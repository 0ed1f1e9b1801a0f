"""Line-classifying chunker for medical documents."""

from __future__ import annotations

from dataclasses import dataclass

from medintel.models.documents import Chunk, ChunkType


@dataclass(frozen=True)
class ClassificationRule:
    """A chunk type and the keyword cues that select it."""

    chunk_type: ChunkType
    keywords: tuple[str, ...]

    def matches(self, line: str) -> bool:
        lower = line.lower()
        return any(keyword in lower for keyword in self.keywords)


# Evaluated top to bottom; the first matching rule wins.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "medication",
        ("medication", "prescription", "drug", "tablet", "mg", "dosage"),
    ),
    ClassificationRule(
        "diagnosis",
        ("diagnosis", "condition", "disease", "syndrome", "disorder"),
    ),
    ClassificationRule(
        "lab_result",
        ("blood", "urine", "test result", "lab", "glucose", "cholesterol"),
    ),
    ClassificationRule(
        "vital_signs",
        ("blood pressure", "heart rate", "temperature", "weight", "height", "bp"),
    ),
    ClassificationRule(
        "procedure",
        ("surgery", "procedure", "operation", "treatment", "therapy"),
    ),
)


def classify_line(
    line: str, rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES
) -> ChunkType:
    """Return the chunk type of the first rule matching ``line``, else general."""
    for rule in rules:
        if rule.matches(line):
            return rule.chunk_type
    return "general"


def split_sections(
    text: str, rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES
) -> list[tuple[ChunkType, str]]:
    """Group consecutive same-type lines into (chunk_type, text) sections.

    Blank lines are dropped; a change of type flushes the current section.
    """
    sections: list[tuple[ChunkType, str]] = []
    current_type: ChunkType | None = None
    current_lines: list[str] = []

    def _flush() -> None:
        if current_lines and current_type is not None:
            sections.append((current_type, "\n".join(current_lines)))

    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        line_type = classify_line(line, rules)
        if line_type != current_type:
            _flush()
            current_type = line_type
            current_lines = []
        current_lines.append(line)

    _flush()
    return sections


def chunk_document(
    document_id: str,
    text: str,
    *,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> list[Chunk]:
    """Split document text into ordered, type-tagged chunks without embeddings."""
    return [
        Chunk(
            id=f"{document_id}_chunk_{idx}",
            document_id=document_id,
            content=content,
            chunk_type=chunk_type,
            index=idx,
        )
        for idx, (chunk_type, content) in enumerate(split_sections(text, rules))
    ]
