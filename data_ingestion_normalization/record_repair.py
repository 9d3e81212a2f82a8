"""
Record Repair Parser
====================

The text-generation service is asked for an array of records, and what comes
back is usually *almost* JSON: a `const data = [...]` declaration, unquoted
keys, single quotes, trailing commas, comments, stray control characters.
This module repairs that text into a list of flat records.

The parser never raises. A literal that cannot be repaired as a whole is
mined for individual `{...}` fragments; whatever parses is returned.

Usage:
    records = parse_records("const data = [{Month:'Jan', Profit ($):8994,},]")
    # [{'Month': 'Jan', 'Profit ($)': 8994}]
"""

import re
import structlog
import orjson
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core_infrastructure.errors import RepairFailure
from core_infrastructure.observability import RECORDS_REPAIRED

logger = structlog.get_logger(__name__)

_CODE_FENCE = re.compile(r"```[A-Za-z]*[ \t]*\n?(.*?)```", re.DOTALL)
_DECLARATION = re.compile(r"\b(?:const|let|var)\s+[A-Za-z_$][\w$]*\s*=\s*")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_PLACEHOLDER = re.compile(r"@@(\d+)@@")
_ISO_DATE = re.compile(
    r"(?<![\w.@-])\d{4}-\d{2}(?:-\d{2})?"
    r"(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?"
    r"(?![\w.@])"
)
_JS_NON_VALUES = re.compile(r"-?\bInfinity\b|\bundefined\b|\bNaN\b")
_BARE_KEY = re.compile(r"([{,]\s*)([^\s{}\[\],:@\"'][^{}\[\],:]*?)(\s*:)")
_BARE_VALUE = re.compile(r"(:\s*)([^\s{}\[\],:@\"][^{}\[\],]*?)(\s*[,}\]])")
_JSON_NUMBER = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_DOUBLE_COMMA = re.compile(r",\s*,")
_FLAT_OBJECT = re.compile(r"\{[^{}]*\}")

_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', 'b': '\b', 'f': '\f', 'v': '\v', '0': '\0'}
_JSON_KEYWORDS = {'true', 'false', 'null'}


@dataclass
class RepairReport:
    """Outcome of one parse: the records plus how they were obtained."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    strategy: str = "none"  # "full", "partial" or "none"
    fragment_failures: int = 0
    dropped_items: int = 0


def _placeholder(index: int) -> str:
    return f"@@{index}@@"


def _read_string(text: str, start: int) -> Tuple[Optional[str], int]:
    """
    Read a quoted literal starting at text[start]. Returns (value, end index)
    or (None, start) when the literal is not closed before the line ends.
    """
    quote = text[start]
    buf: List[str] = []
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '\\' and i + 1 < n:
            nxt = text[i + 1]
            if nxt == 'u' and re.fullmatch(r"[0-9a-fA-F]{4}", text[i + 2:i + 6] or ''):
                buf.append(chr(int(text[i + 2:i + 6], 16)))
                i += 6
                continue
            buf.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == quote:
            return ''.join(buf), i + 1
        if ch == '\n' and quote != '`':
            return None, start
        buf.append(ch)
        i += 1
    return None, start


def _mask_literals(text: str) -> Tuple[str, List[str]]:
    """
    Drop comments and replace every closed string literal with a placeholder.
    Everything after this step can use plain regexes without tripping over
    commas, colons or brackets inside strings.
    """
    out: List[str] = []
    literals: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '/' and i + 1 < n and text[i + 1] == '/':
            end = text.find('\n', i)
            i = n if end == -1 else end
            continue
        if ch == '/' and i + 1 < n and text[i + 1] == '*':
            end = text.find('*/', i + 2)
            i = n if end == -1 else end + 2
            continue
        if ch in ('"', "'", '`'):
            value, end = _read_string(text, i)
            if value is not None:
                out.append(_placeholder(len(literals)))
                literals.append(value)
                i = end
                continue
        out.append(ch)
        i += 1
    return ''.join(out), literals


def _locate_array(skeleton: str) -> Tuple[Optional[str], int]:
    """
    Find the array literal, preferring the one bound by a declaration.
    Returns (array text or None if unbalanced, start offset or -1).
    """
    declaration = _DECLARATION.search(skeleton)
    start = skeleton.find('[', declaration.end() if declaration else 0)
    if start == -1:
        return None, -1
    depth = 0
    for i in range(start, len(skeleton)):
        ch = skeleton[i]
        if ch == '[':
            depth += 1
        elif ch == ']':
            depth -= 1
            if depth == 0:
                return skeleton[start:i + 1], start
    return None, start


def _repair(source: str, literals: List[str]) -> str:
    """Rewrite masked object-literal text into strict JSON text."""
    literals = [_CONTROL_CHARS.sub('', value) for value in literals]
    text = _CONTROL_CHARS.sub('', source)

    def protect_date(match: "re.Match") -> str:
        literals.append(match.group(0))
        return _placeholder(len(literals) - 1)

    def as_json_string(token: str) -> str:
        # Placeholders embedded in a bare token are expanded before quoting
        token = _PLACEHOLDER.sub(lambda m: literals[int(m.group(1))], token.strip())
        return orjson.dumps(token).decode()

    def quote_key(match: "re.Match") -> str:
        return f"{match.group(1)}{as_json_string(match.group(2))}{match.group(3)}"

    def quote_value(match: "re.Match") -> str:
        token = match.group(2).strip()
        if token in _JSON_KEYWORDS or _JSON_NUMBER.fullmatch(token) or _PLACEHOLDER.fullmatch(token):
            return match.group(0)
        return f"{match.group(1)}{as_json_string(token)}{match.group(3)}"

    text = _ISO_DATE.sub(protect_date, text)
    text = _JS_NON_VALUES.sub('null', text)
    text = _BARE_KEY.sub(quote_key, text)
    text = _BARE_VALUE.sub(quote_value, text)
    while _DOUBLE_COMMA.search(text):
        text = _DOUBLE_COMMA.sub(',', text)
    text = _TRAILING_COMMA.sub(r"\1", text)
    return _PLACEHOLDER.sub(lambda m: orjson.dumps(literals[int(m.group(1))]).decode(), text)


def _loads(source: str, literals: List[str]) -> Any:
    repaired = _repair(source, literals)
    try:
        return orjson.loads(repaired)
    except orjson.JSONDecodeError as e:
        raise RepairFailure("Repaired literal is still not valid JSON", error=str(e)) from e


class RecordRepairParser:
    """Stateless; one instance can be shared."""

    def parse(self, text: Optional[str]) -> RepairReport:
        report = RepairReport()
        if not text or not text.strip():
            RECORDS_REPAIRED.labels(strategy="none").inc()
            return report

        fence = _CODE_FENCE.search(text)
        body = fence.group(1) if fence else text
        skeleton, literals = _mask_literals(body)
        array_source, start = _locate_array(skeleton)

        if array_source is not None:
            try:
                parsed = _loads(array_source, literals)
                if not isinstance(parsed, list):
                    raise RepairFailure("Located literal is not an array")
                report.records, report.dropped_items = self._keep_records(parsed)
                report.strategy = "full"
                RECORDS_REPAIRED.labels(strategy="full").inc()
                return report
            except RepairFailure as e:
                logger.warning("record_array_repair_failed", error=str(e))

        region = skeleton[start:] if start >= 0 else skeleton
        recovered: List[Any] = []
        for fragment in _FLAT_OBJECT.findall(region):
            try:
                recovered.append(_loads(fragment, literals))
            except RepairFailure:
                report.fragment_failures += 1
        report.records, report.dropped_items = self._keep_records(recovered)
        report.strategy = "partial" if report.records else "none"
        RECORDS_REPAIRED.labels(strategy=report.strategy).inc()

        if report.records:
            logger.info("record_fragments_recovered",
                        recovered=len(report.records),
                        failed=report.fragment_failures)
        else:
            logger.warning("record_repair_no_data",
                           fragments_failed=report.fragment_failures,
                           text_length=len(text))
        return report

    @staticmethod
    def _keep_records(items: List[Any]) -> Tuple[List[Dict[str, Any]], int]:
        records = [item for item in items if isinstance(item, dict)]
        dropped = len(items) - len(records)
        if dropped:
            logger.info("non_record_items_dropped", dropped=dropped)
        return records, dropped


_parser = RecordRepairParser()


def parse_records(text: Optional[str]) -> List[Dict[str, Any]]:
    """Best-effort list of records from a repaired array literal. Never raises."""
    return _parser.parse(text).records
