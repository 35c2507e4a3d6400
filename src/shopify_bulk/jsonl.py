import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def dump_jsonl(records: Iterable[dict[str, Any]]) -> str:
    """
    Serialize records to JSONL, one compact JSON object per line

    An empty input produces an empty string.
    """
    return "\n".join(json.dumps(record, separators=(",", ":"), ensure_ascii=False) for record in records)


def parse_jsonl(content: str | bytes) -> list[Any]:
    """
    Parse JSONL content into a list of values

    Blank lines are ignored. A line that is not valid JSON (or, for bytes
    content, not valid UTF-8) is logged and skipped so that one corrupt line
    does not void the whole file.

    Args:
        content: JSONL text, or the raw UTF-8 body of a result file

    Returns:
        Parsed values in file order
    """
    if isinstance(content, bytes):
        lines = content.split(b"\n")
    else:
        lines = content.split("\n")

    results = []
    for line in lines:
        line = line.strip()
        if not line:
            continue

        try:
            text = line.decode("utf-8") if isinstance(line, bytes) else line
            results.append(json.loads(text))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")
            logger.warning(f"Failed to parse JSONL line: {line[:100]}... Error: {e}")

    logger.info(f"Parsed {len(results)} JSONL records")
    return results


def read_variables_file(path: str | Path) -> list[dict[str, Any]]:
    """
    Read bulk mutation variables from a file

    A .jsonl file holds one record per line, anything else a JSON array.
    Unlike result files, every line must be valid.

    Raises:
        ValueError: If the file cannot be parsed
    """
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        content = f.read()

    if path.suffix == ".jsonl":
        return [json.loads(line) for line in content.split("\n") if line.strip()]

    variables = json.loads(content)
    if not isinstance(variables, list):
        raise ValueError("Variables file must contain a JSON array")
    return variables
