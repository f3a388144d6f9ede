"""
Dependency classifier: decides which model-requested names are worth handing
to a package manager. Purely shape based: no registry lookups here.
"""
import json, logging, re
from pathlib import Path

log = logging.getLogger("deps")

# Tokens models emit as "dependencies" that are not installable packages.
DENY_EXACT = {
    # Tailwind directive layers
    "@tailwindcss/base", "@tailwindcss/components", "@tailwindcss/utilities",
    "tailwindcss/base", "tailwindcss/components", "tailwindcss/utilities",
    "@tailwind/base", "@tailwind/components", "@tailwind/utilities",
    # shadcn is a generator, not a package
    "shadcn/ui", "shadcn-ui", "shadcn", "ui", "@shadcn/ui",
    "@vercel/preact",
    # Next.js internal import paths
    "next/link", "next/image", "next/navigation", "next/router", "next/head", "next/server",
    "@next/navigation",
}
DENY_SCOPES = ("@next/",)
COMPETING_ROUTERS = ("react-router", "react-router-dom")
TAILWIND_SCOPE = "@tailwindcss/"
TAILWIND_ALLOW = {"@tailwindcss/postcss", "@tailwindcss/node", "@tailwindcss/oxide"}
VCS_PREFIXES = ("git+", "git://", "ssh://", "github:")

NODE_BUILTINS = {
    "assert", "async_hooks", "buffer", "child_process", "cluster", "console", "constants",
    "crypto", "dgram", "diagnostics_channel", "dns", "domain", "events", "fs", "http",
    "http2", "https", "inspector", "module", "net", "os", "path", "perf_hooks", "process",
    "punycode", "querystring", "readline", "repl", "stream", "string_decoder", "sys",
    "timers", "tls", "trace_events", "tty", "url", "util", "v8", "vm", "wasi",
    "worker_threads", "zlib", "test",
}


def _pinned(name: str, base: str) -> bool:
    return name == base or name.startswith(base + "@")


def block_reason(name: str, is_next_project: bool = False) -> str:
    """Why a name is rejected, or '' when it looks installable."""
    if not name:
        return "empty"
    if re.search(r"\s", name):
        return "contains whitespace"
    lower = name.lower()
    if lower.startswith(DENY_SCOPES):
        return "framework-internal scope"
    if lower.startswith(VCS_PREFIXES) or "github.com/" in lower or lower.endswith(".git"):
        return "URL / VCS specifier"
    if name in DENY_EXACT or _pinned(name, "@vercel/preact"):
        return "known non-package token"
    if is_next_project and any(_pinned(name, r) for r in COMPETING_ROUTERS):
        return "Next.js has its own router"
    if "/" in name and not name.startswith("@"):
        return "sub-path import, not a package"
    if name.startswith(TAILWIND_SCOPE) and name not in TAILWIND_ALLOW:
        return "unknown @tailwindcss package"
    return ""


def filter_valid(names: list[str], is_next_project: bool = False) -> list[str]:
    """Order-preserving subset of names that look installable."""
    out = []
    for raw in names:
        name = (raw or "").strip()
        reason = block_reason(name, is_next_project)
        if reason:
            if name:
                log.info(f"   ⛔ dependency '{name}' blocked: {reason}")
            continue
        out.append(name)
    return out


def split_buckets(names: list[str]) -> tuple[list[str], list[str]]:
    """(prod, dev). Type declaration packages are dev-only."""
    prod, dev = [], []
    for n in names:
        (dev if n.startswith("@types/") else prod).append(n)
    return prod, dev


# ── Manifest helpers ──────────────────────────────────────────────────────────

def read_manifest(project_dir) -> dict | None:
    try:
        data = json.loads((Path(project_dir) / "package.json").read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else None
    except (OSError, ValueError):
        return None


def declared_deps(pkg: dict | None) -> dict:
    if not pkg:
        return {}
    return {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}


def is_next_project(pkg: dict | None) -> bool:
    v = declared_deps(pkg).get("next")
    return isinstance(v, str) and len(v) > 0


# ── Import scanning ───────────────────────────────────────────────────────────

RE_IMPORTS = (
    re.compile(r"from\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"require\(\s*['\"]([^'\"]+)['\"]\s*\)"),
    re.compile(r"import\(\s*['\"]([^'\"]+)['\"]\s*\)"),
)


def package_of(spec: str) -> str | None:
    """Map an import specifier to the package that provides it."""
    if not spec or spec.startswith((".", "/", "file:", "node:", "@/", "~", "#")):
        return None
    clean = spec.split("?")[0].split("#")[0]
    first = clean.split("/")[0]
    if first in NODE_BUILTINS:
        return None
    if clean.startswith("@"):
        parts = clean.split("/")
        return "/".join(parts[:2]) if len(parts) >= 2 else None
    return first


def infer_dependencies(files) -> list[str]:
    """Packages imported by the given FileEdits, in first-seen order."""
    out: list[str] = []
    for f in files:
        if Path(f.path).suffix.lower() not in (".ts", ".tsx", ".js", ".jsx"):
            continue
        for pat in RE_IMPORTS:
            for m in pat.finditer(f.content):
                pkg = package_of(m.group(1))
                if pkg and pkg not in out:
                    out.append(pkg)
    return out
