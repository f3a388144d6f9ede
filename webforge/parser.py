"""
Response parser: turns free-form model output into file edits + dependency names.

Recognised file forms (all produce the same FileEdit):
  1. "File: path" line followed by a fenced block
  2. a heading that is just a source path ("### src/app/page.tsx") followed by a fenced block
  3. a fence whose info string carries the path ("```file path", "```tsx file=path")
  4. a plain fence whose first lines contain a marker comment ("// File: path")

Plus "Dependencies: [...]" lines, inline or continued on the following lines.
Never raises: unparseable input gives no files and the whole text as summary.
"""
import json, logging, re
from dataclasses import dataclass, field, asdict

log = logging.getLogger("parser")

FENCE = "```"
SOURCE_EXTS = ("tsx", "ts", "jsx", "js", "json", "css", "mjs", "cjs")

RE_DEPS       = re.compile(r"^\s*(?:[-*•]\s*)?(?:#{1,6}\s*)?Dependencies\s*:\s*", re.IGNORECASE)
RE_FILE_LINE  = re.compile(r"^\s*(?:[-*•]\s*)?(?:#{1,6}\s*)?File\s*:\s*(.+)$", re.IGNORECASE)
RE_HEAD_PATH  = re.compile(
    r"^\s*(?:[-*•]\s*)?(?:#{1,6}\s*)?(\S+?\.(?:%s))\s*$" % "|".join(SOURCE_EXTS), re.IGNORECASE)
RE_FENCE_FILE = re.compile(r"^```\s*(?:[\w.+-]+\s+)?file(?:name)?(?:\s*[:=]\s*|\s+)(.+)$", re.IGNORECASE)

MARKER_PATTERNS = [
    re.compile(r"^\s*//\s*File\s*:\s*(.+?)\s*$", re.IGNORECASE),
    re.compile(r"^\s*/\*\s*File\s*:\s*(.+?)\s*\*/\s*$", re.IGNORECASE),
    re.compile(r"^\s*#\s*File\s*:\s*(.+?)\s*$", re.IGNORECASE),
    re.compile(r"^\s*<!--\s*File\s*:\s*(.+?)\s*-->\s*$", re.IGNORECASE),
    re.compile(r"^\s*File\s*:\s*(.+?)\s*$", re.IGNORECASE),
]
MARKER_SCAN_LINES = 8


@dataclass
class FileEdit:
    path: str
    content: str


@dataclass
class ParsedResponse:
    summary: str
    files: list[FileEdit] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    raw: str = ""

    @property
    def has_edits(self) -> bool:
        return bool(self.files or self.dependencies)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Hit:
    """One extraction-rule match: where it was triggered and where scanning resumes."""
    trigger: int
    resume: int
    edit: FileEdit | None = None


# ── Helpers ───────────────────────────────────────────────────────────────────

def normalize_path(raw: str) -> str:
    s = (raw or "").strip()
    s = re.sub(r"^[-*•]\s+", "", s)
    s = s.strip("'\"`").strip()
    if s.startswith("./"):
        s = s[2:]
    return s


def _strip_quotes(s: str) -> str:
    return re.sub(r"^['\"]|['\"]$", "", s)


def parse_dependency_list(text: str) -> list[str]:
    """JSON array first, then a bullet list (2+ lines, no commas), then comma-split."""
    try:
        arr = json.loads(text)
        if isinstance(arr, list):
            return [x for x in arr if isinstance(x, str)]
    except (ValueError, TypeError):
        pass

    cleaned = re.sub(r"^Dependencies\s*:\s*", "", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"^[\[(]\s*", "", cleaned)
    cleaned = re.sub(r"[\])]\s*$", "", cleaned).strip()

    bullets = [re.sub(r"^[-*•]\s+", "", l.strip()).strip() for l in cleaned.split("\n")]
    bullets = [b for b in bullets if b]
    if len(bullets) >= 2 and "," not in cleaned:
        return [b for b in (_strip_quotes(x) for x in bullets) if b]

    return [x for x in (_strip_quotes(p.strip()) for p in cleaned.split(",")) if x]


def _read_fence(lines: list[str], i: int) -> tuple[list[str], int]:
    """Collect lines from i up to the closing fence. Unterminated fences run to the end."""
    body = []
    while i < len(lines) and not lines[i].startswith(FENCE):
        body.append(lines[i])
        i += 1
    if i < len(lines):
        i += 1
    return body, i


def _next_nonblank(lines: list[str], i: int) -> int:
    while i < len(lines) and lines[i].strip() == "":
        i += 1
    return i


def _marker_in_fence(body: list[str]) -> FileEdit | None:
    for idx, line in enumerate(body[:MARKER_SCAN_LINES]):
        for pat in MARKER_PATTERNS:
            m = pat.match(line)
            if not m:
                continue
            path = normalize_path(m.group(1))
            if not path:
                return None
            rest = body[:idx] + body[idx + 1:]
            while rest and rest[0].strip() == "":
                rest.pop(0)
            return FileEdit(path, "\n".join(rest))
    return None


# ── Extraction rules, tried in this order on every line ──────────────────────

def _rule_file_line(lines, i):
    m = RE_FILE_LINE.match(lines[i])
    if not m:
        return None
    path = normalize_path(m.group(1))
    j = _next_nonblank(lines, i + 1)
    if j >= len(lines) or not lines[j].startswith(FENCE):
        # a dangling "File:" still ends the summary
        return _Hit(i, i + 1)
    body, end = _read_fence(lines, j + 1)
    return _Hit(i, end, FileEdit(path, "\n".join(body)) if path else None)


def _rule_heading_path(lines, i):
    m = RE_HEAD_PATH.match(lines[i])
    if not m:
        return None
    path = normalize_path(m.group(1))
    j = _next_nonblank(lines, i + 1)
    if not path or j >= len(lines) or not lines[j].startswith(FENCE):
        return None
    body, end = _read_fence(lines, j + 1)
    return _Hit(i, end, FileEdit(path, "\n".join(body)))


def _rule_fence_hint(lines, i):
    m = RE_FENCE_FILE.match(lines[i])
    if not m:
        return None
    path = normalize_path(m.group(1))
    body, end = _read_fence(lines, i + 1)
    return _Hit(i, end, FileEdit(path, "\n".join(body)) if path else None)


def _rule_fence_marker(lines, i):
    if not lines[i].startswith(FENCE):
        return None
    body, end = _read_fence(lines, i + 1)
    edit = _marker_in_fence(body)
    if edit is None:
        return _Hit(-1, end)   # plain code block, not a file
    return _Hit(i, end, edit)


FILE_RULES = (_rule_file_line, _rule_heading_path, _rule_fence_hint, _rule_fence_marker)


def _read_dependencies(lines: list[str], i: int) -> tuple[list[str], int] | None:
    m = RE_DEPS.match(lines[i])
    if not m:
        return None
    rest = lines[i][m.end():].strip()
    if rest:
        return parse_dependency_list(rest), i + 1
    j, buf = i + 1, []
    while j < len(lines) and lines[j].strip() and sum(map(len, buf)) < 20000:
        buf.append(lines[j])
        j += 1
    return parse_dependency_list("\n".join(buf).strip()), j


# ── Public API ────────────────────────────────────────────────────────────────

def parse_response(raw: str) -> ParsedResponse:
    raw = raw if isinstance(raw, str) else ""
    lines = raw.replace("\r\n", "\n").split("\n")

    files: list[FileEdit] = []
    deps: list[str] = []
    first_trigger = None

    i = 0
    while i < len(lines):
        dep_hit = _read_dependencies(lines, i)
        if dep_hit:
            found, i = dep_hit
            deps.extend(found)
            continue

        hit = None
        for rule in FILE_RULES:
            hit = rule(lines, i)
            if hit:
                break
        if not hit:
            i += 1
            continue

        if hit.trigger >= 0 and first_trigger is None:
            first_trigger = hit.trigger
        if hit.edit:
            files.append(hit.edit)
        i = hit.resume

    if first_trigger is None:
        summary = raw.strip()
    else:
        summary = "\n".join(lines[:first_trigger]).strip()

    uniq: list[str] = []
    for d in (d.strip() for d in deps):
        if d and d not in uniq:
            uniq.append(d)

    log.debug(f"parsed {len(files)} file(s), {len(uniq)} dependency name(s)")
    return ParsedResponse(summary=summary, files=files, dependencies=uniq, raw=raw)
