"""Prompt file parsing for file-driven batches.

Prompts are separated by runs of six or more asterisks. Files without such a
separator fall back to one prompt per non-blank line.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

SEPARATOR_PATTERN = re.compile(r"\*{6,}")
SEPARATOR_ONLY_PATTERN = re.compile(r"^[\s*\-_=]+$")
SHORT_PROMPT_LENGTH = 20
_BOMS = ("\ufeff", "\ufffe")


@dataclass
class ParseOptions:
    max_prompts: int = 50
    min_prompt_length: int = 5
    max_prompt_length: int = 2000


@dataclass
class ParsedPrompt:
    id: str
    content: str
    original_index: int
    is_valid: bool = True
    validation_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "original_index": self.original_index,
            "is_valid": self.is_valid,
            "validation_error": self.validation_error,
        }


@dataclass
class ParseResult:
    prompts: list[ParsedPrompt] = field(default_factory=list)
    total_found: int = 0
    parse_method: str = "separator"  # separator | line-based
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return sum(1 for p in self.prompts if p.is_valid)

    @property
    def invalid_count(self) -> int:
        return sum(1 for p in self.prompts if not p.is_valid)

    @property
    def valid_prompts(self) -> list[str]:
        return [p.content for p in self.prompts if p.is_valid]

    def to_dict(self) -> dict:
        return {
            "prompts": [p.to_dict() for p in self.prompts],
            "total_found": self.total_found,
            "valid_count": self.valid_count,
            "invalid_count": self.invalid_count,
            "parse_method": self.parse_method,
            "errors": self.errors,
            "warnings": self.warnings,
        }


def validate_prompt(content: str, options: ParseOptions | None = None) -> str | None:
    """Return the reason a single prompt is unusable, or None if it is fine."""
    opts = options or ParseOptions()
    trimmed = (content or "").strip()
    if not trimmed:
        return "Prompt is empty"
    if len(trimmed) < opts.min_prompt_length:
        return f"Prompt too short (minimum {opts.min_prompt_length} characters)"
    if len(trimmed) > opts.max_prompt_length:
        return f"Prompt too long (maximum {opts.max_prompt_length} characters)"
    if SEPARATOR_ONLY_PATTERN.match(trimmed):
        return "Prompt contains only whitespace or separator characters"
    return None


def parse_content(content: str, options: ParseOptions | None = None) -> ParseResult:
    """Split raw text into prompts, validate each, and cap the batch size."""
    opts = options or ParseOptions()
    result = ParseResult()

    if not content or not content.strip():
        result.errors.append("Content is empty")
        return result

    raw = _extract(_clean(content), result)
    result.total_found = len(raw)
    result.prompts = [_to_prompt(text, i, opts) for i, text in enumerate(raw)]

    if len(result.prompts) > opts.max_prompts:
        found = len(result.prompts)
        result.prompts = result.prompts[: opts.max_prompts]
        result.warnings.append(f"Batch size limited to {opts.max_prompts} prompts (found {found})")

    if result.invalid_count:
        result.warnings.append(f"{result.invalid_count} prompts were invalid and will be skipped")
    if result.parse_method == "line-based" and result.total_found > 10:
        result.warnings.append(
            "Used line-based parsing. Consider using ****** separators for better control"
        )
    short = sum(1 for p in result.prompts if p.is_valid and len(p.content) < SHORT_PROMPT_LENGTH)
    if short:
        result.warnings.append(f"{short} prompts are very short and may produce poor results")

    logger.info(
        f"Parsed {result.total_found} prompts ({result.parse_method}): "
        f"{result.valid_count} valid, {result.invalid_count} invalid"
    )
    return result


def parse_file(path: Path | str, options: ParseOptions | None = None) -> ParseResult:
    """Read a UTF-8 text file and parse it. Read failures land in `errors`."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read prompt file {path}: {e}")
        return ParseResult(errors=[f"Failed to parse file: {e}"])
    if not content.strip():
        return ParseResult(errors=["File is empty or contains no readable content"])
    return parse_content(content, options)


def _clean(content: str) -> str:
    for bom in _BOMS:
        if content.startswith(bom):
            content = content[len(bom):]
    return content.replace("\r\n", "\n").replace("\r", "\n")


def _extract(content: str, result: ParseResult) -> list[str]:
    if SEPARATOR_PATTERN.search(content):
        result.parse_method = "separator"
        parts = SEPARATOR_PATTERN.split(content)
    else:
        result.parse_method = "line-based"
        parts = content.split("\n")
    return [p.strip() for p in parts if p.strip()]


def _to_prompt(text: str, index: int, opts: ParseOptions) -> ParsedPrompt:
    error = validate_prompt(text, opts)
    return ParsedPrompt(
        id=f"prompt_{index}",
        content=text,
        original_index=index,
        is_valid=error is None,
        validation_error=error,
    )
