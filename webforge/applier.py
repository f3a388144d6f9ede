"""
Change applier: writes parsed file edits into a project and installs the
requested dependencies on a best-effort basis.

Bad paths raise PathValidationError. Earlier files of the batch stay written.
Dependency problems never raise: they end up in ApplyResult.skipped_dependencies.
"""
import asyncio, logging, os, posixpath, re, shutil
from dataclasses import dataclass, field, asdict
from pathlib import Path

from . import deps
from .errors import PathValidationError, WebforgeError
from .repair import resolve_client_metadata_conflict

log = logging.getLogger("applier")

INSTALL_TIMEOUT = 300
INSTALL_PREFERENCE = ("pnpm", "yarn", "npm")


@dataclass
class ApplyResult:
    written_files: list[str] = field(default_factory=list)
    installed_dependencies: list[str] = field(default_factory=list)
    skipped_dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Path containment ──────────────────────────────────────────────────────────

def normalize_path_input(raw: str) -> str:
    s = (raw or "").replace("\\", "/").strip()
    s = re.sub(r"^[-*•]\s+", "", s)
    s = s.strip("'\"`").strip()
    s = re.sub(r":\d+(?::\d+)?$", "", s)
    while s.startswith("./"):
        s = s[2:]
    return s


def _is_absolute(p: str) -> bool:
    return p.startswith("/") or bool(re.match(r"^[A-Za-z]:/", p))


def sanitize_relative(project_dir, raw: str) -> str:
    """Project-relative forward-slash form of raw, or PathValidationError."""
    cleaned = normalize_path_input(raw)
    if not cleaned:
        raise PathValidationError("Invalid file path from model: empty path", detail=repr(raw))
    if ".." in cleaned.split("/"):
        raise PathValidationError(f"Refusing to write outside the project: {raw}")

    if _is_absolute(cleaned):
        root = Path(project_dir).resolve()
        try:
            rel = Path(cleaned).resolve().relative_to(root).as_posix()
        except ValueError:
            raise PathValidationError(f"Refusing to write outside the project: {raw}") from None
        if rel in ("", "."):
            raise PathValidationError(f"Invalid file path from model: {raw}")
        return sanitize_relative(project_dir, rel)

    norm = posixpath.normpath(cleaned)
    if norm == "." or norm.startswith("..") or "/../" in norm:
        raise PathValidationError(f"Invalid file path from model: {raw}")
    return norm


# ── Next.js content fixes ─────────────────────────────────────────────────────

RE_ROUTER_LINK_IMPORT = re.compile(
    r"^[ \t]*import\s+\{\s*Link\s*\}\s+from\s+['\"]react-router-dom['\"];?[ \t]*$", re.MULTILINE)
RE_ROUTER_LINK_DEFAULT = re.compile(
    r"^[ \t]*import\s+Link\s+from\s+['\"]react-router-dom['\"];?[ \t]*$", re.MULTILINE)
RE_LINK_TO = re.compile(r"<Link(\s[^>]*?)\bto=")
RE_BAD_METADATA_IMPORT = re.compile(
    r"^[ \t]*import\s*\{\s*Metadata\s*\}\s*from\s*['\"]next/navigation['\"];?[ \t]*$", re.MULTILINE)
RE_GLOBALS_IMPORT = re.compile(r"^[ \t]*import\s+[^;\n]*globals\.css['\"];?[ \t]*\n?", re.MULTILINE)
RE_PAGE_FILE = re.compile(r"(^|/)page\.(tsx|ts|jsx|js)$")
RE_SCRIPT_FILE = re.compile(r"\.(tsx|ts|jsx|js)$")


def sanitize_next_content(rel: str, content: str) -> str:
    if not RE_SCRIPT_FILE.search(rel):
        return content
    out = RE_ROUTER_LINK_IMPORT.sub("import Link from 'next/link'", content)
    out = RE_ROUTER_LINK_DEFAULT.sub("import Link from 'next/link'", out)
    out = RE_LINK_TO.sub(r"<Link\1href=", out)
    out = RE_BAD_METADATA_IMPORT.sub("import type { Metadata } from 'next'", out)

    if RE_PAGE_FILE.search(rel):
        out = RE_GLOBALS_IMPORT.sub("", out)
        out, action = resolve_client_metadata_conflict(out)
        if action:
            log.info(f"   🔧 {rel}: {action}")
    return out


# ── Package manager commands ──────────────────────────────────────────────────

async def command_ok(cmd: str) -> bool:
    """True when `cmd --version` runs and exits 0."""
    exe = shutil.which(cmd)
    if not exe:
        return False
    try:
        proc = await asyncio.create_subprocess_exec(
            exe, "--version",
            stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL)
        return await asyncio.wait_for(proc.wait(), 20) == 0
    except (OSError, asyncio.TimeoutError):
        return False


async def run_command(cmd: str, args: list[str], cwd) -> tuple[int, str]:
    """Run cmd with args in cwd. Returns (exit code, combined output)."""
    exe = shutil.which(cmd) or cmd
    try:
        proc = await asyncio.create_subprocess_exec(
            exe, *args, cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, "CI": "true"})
    except OSError as e:
        return 127, str(e)
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), INSTALL_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return 124, f"{cmd} {' '.join(args)} timed out after {INSTALL_TIMEOUT}s"
    return proc.returncode, out.decode("utf-8", "replace")


async def pick_install_manager() -> str | None:
    for pm in INSTALL_PREFERENCE:
        if await command_ok(pm):
            return pm
    return None


def install_args(pm: str, pkgs: list[str], dev: bool) -> list[str]:
    verb = "install" if pm == "npm" else "add"
    return [verb, *(["-D"] if dev else []), *pkgs]


async def install_best_effort(pm: str, cwd, pkgs: list[str], dev: bool) -> tuple[list[str], list[str]]:
    """Batch install, then one package at a time. Returns (installed, failed)."""
    if not pkgs:
        return [], []
    label = "dev" if dev else "prod"
    code, out = await run_command(pm, install_args(pm, pkgs, dev), cwd)
    if code == 0:
        log.info(f"   ✅ {pm}: installed {label} {pkgs}")
        return list(pkgs), []

    log.warning(f"   {pm} batch install failed ({label}), retrying one by one")
    log.debug(out[-1500:])
    installed, failed = [], []
    for pkg in pkgs:
        code, out = await run_command(pm, install_args(pm, [pkg], dev), cwd)
        if code == 0:
            installed.append(pkg)
        else:
            failed.append(pkg)
            log.warning(f"   ✗ {pm}: could not install {pkg}")
            log.debug(out[-800:])
    return installed, failed


async def install_dependencies(project_dir, names: list[str], is_next: bool) -> tuple[list[str], list[str]]:
    """Returns (installed, skipped). Blocked names come first in skipped."""
    requested = []
    for n in (n.strip() for n in names if isinstance(n, str)):
        if n and n not in requested:
            requested.append(n)
    valid = deps.filter_valid(requested, is_next_project=is_next)
    blocked = [n for n in requested if n not in valid]
    if not valid:
        return [], blocked

    pm = await pick_install_manager()
    if pm is None:
        log.error("   No package manager found (pnpm, yarn, npm), skipping dependency install")
        return [], blocked + valid

    prod, dev = deps.split_buckets(valid)
    installed, failed = [], []
    for bucket, is_dev in ((prod, False), (dev, True)):
        ok, bad = await install_best_effort(pm, project_dir, bucket, is_dev)
        installed += ok
        failed += bad
    return installed, blocked + failed


# ── Public API ────────────────────────────────────────────────────────────────

async def apply_changes(project_dir, files, dependencies=(), on_write=None) -> ApplyResult:
    """
    Write files (sequentially, last write wins on duplicate paths) and install
    dependencies. on_write(rel_path, content) is called after each write.
    """
    root = Path(project_dir).resolve()
    is_next = deps.is_next_project(deps.read_manifest(root))
    result = ApplyResult()

    for f in files:
        rel = sanitize_relative(root, f.path)
        content = sanitize_next_content(rel, f.content) if is_next else f.content
        target = root / rel
        try:
            await asyncio.to_thread(_write_file, target, content)
        except OSError as e:
            raise WebforgeError(f"Could not write {rel}: {e}") from e
        result.written_files.append(rel)
        size = f"{len(content)/1024:.1f}KB" if len(content) >= 1024 else f"{len(content)}B"
        log.info(f"   ✎ {rel} ({size})")
        if on_write:
            on_write(rel, content)

    if dependencies:
        installed, skipped = await install_dependencies(root, list(dependencies), is_next)
        result.installed_dependencies = installed
        result.skipped_dependencies = skipped
        if skipped:
            log.info(f"   skipped dependencies: {skipped}")
    return result


def _write_file(target: Path, content: str):
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
