"""
Project repair pass: deterministic fixups for the structural mistakes models
keep making in Next.js projects. Runs before every preview start.

Each fixup is independent: a failure is logged and the pass moves on.
Running the pass twice makes no further changes the second time.
"""
import json, logging, re, textwrap
from dataclasses import dataclass
from pathlib import Path

from .deps import declared_deps

log = logging.getLogger("repair")

NEXT_VERSION  = "14.2.35"
REACT_VERSION = "18.3.1"
TAILWIND_V4          = "^4.1.18"
TAILWIND_POSTCSS_V4  = "^4.1.18"
TW_ANIMATE_CSS       = "^1.4.0"

GLOBALS_CANDIDATES = ["src/app/globals.css", "app/globals.css", "src/styles/globals.css", "styles/globals.css"]
POSTCSS_CANDIDATES = ["postcss.config.mjs", "postcss.config.js", "postcss.config.cjs"]
LAYOUT_CANDIDATES  = ["src/app/layout.tsx", "app/layout.tsx"]
PAGE_CANDIDATES    = ["src/app/page.tsx", "app/page.tsx"]
BUTTON_REL         = "src/components/ui/button.tsx"

POSTCSS_V4 = textwrap.dedent("""\
    const config = {
      plugins: {
        "@tailwindcss/postcss": {},
      },
    };

    export default config;
    """)

MINIMAL_NEXT_CONFIG = textwrap.dedent("""\
    /** @type {import('next').NextConfig} */
    const nextConfig = {};

    export default nextConfig;
    """)

MINIMAL_LAYOUT = textwrap.dedent("""\
    import "./globals.css";
    import type { Metadata } from "next";
    import React from "react";

    export const metadata: Metadata = {
      title: "webforge App",
      description: "Generated by webforge",
    };

    export default function RootLayout({ children }: { children: React.ReactNode }) {
      return (
        <html lang="en">
          <body className="min-h-screen">{children}</body>
        </html>
      );
    }
    """)

BUTTON_STUB = textwrap.dedent("""\
    import * as React from "react";

    function cn(...classes: Array<string | undefined | null | false>) {
      return classes.filter(Boolean).join(" ");
    }

    export type ButtonProps = React.ButtonHTMLAttributes<HTMLButtonElement> & {
      variant?: "default" | "secondary" | "outline";
    };

    export const Button = React.forwardRef<HTMLButtonElement, ButtonProps>(
      ({ className, variant = "default", ...props }, ref) => {
        return (
          <button
            ref={ref}
            className={cn(
              "inline-flex items-center justify-center rounded-md px-4 py-2 text-sm font-medium transition-colors",
              variant === "default" && "bg-black text-white hover:bg-black/90",
              variant === "secondary" && "bg-zinc-100 text-zinc-900 hover:bg-zinc-200",
              variant === "outline" && "border border-zinc-200 bg-white hover:bg-zinc-50",
              className
            )}
            {...props}
          />
        );
      }
    );

    Button.displayName = "Button";
    """)


@dataclass
class RepairResult:
    reinstall_needed: bool = False
    changes: int = 0


# ── Client marker vs. metadata export ────────────────────────────────────────
# Shared by the applier (before write) and the repair pass (before start).

RE_USE_CLIENT   = re.compile(r"^[ \t]*['\"]use client['\"][ \t]*;?[ \t]*$", re.MULTILINE)
RE_META_CONST   = re.compile(r"\bexport\s+const\s+metadata\b")
RE_META_FUNC    = re.compile(r"\bexport\s+(?:async\s+)?function\s+generateMetadata\b")
RE_CLIENT_HOOKS = re.compile(
    r"\buse(State|Effect|LayoutEffect|Memo|Callback|Ref|Reducer|Transition|DeferredValue"
    r"|Optimistic|SyncExternalStore|Id)\b")
RE_ROUTER_HOOKS = re.compile(r"\buse(Pathname|SearchParams|Params|Router)\b")
RE_NEXT_NAV     = re.compile(r"from\s+['\"]next/navigation['\"]")
RE_ON_CLICK     = re.compile(r"onClick\s*=")
RE_METADATA_TYPE_IMPORT = re.compile(
    r"^[ \t]*import\s+type\s*\{\s*Metadata\s*\}\s+from\s+['\"]next['\"];?[ \t]*\n?", re.MULTILINE)


def has_use_client(src: str) -> bool:
    head = "\n".join(src.splitlines()[:30])
    return bool(RE_USE_CLIENT.search(head))


def has_metadata_export(src: str) -> bool:
    return bool(RE_META_CONST.search(src) or RE_META_FUNC.search(src))


def uses_client_only(src: str) -> bool:
    return bool(
        RE_CLIENT_HOOKS.search(src) or RE_ROUTER_HOOKS.search(src)
        or RE_NEXT_NAV.search(src) or RE_ON_CLICK.search(src)
    )


def find_matching_brace(src: str, open_pos: int, pair: str = "{}") -> int:
    """Index of the bracket closing src[open_pos], skipping strings and comments. -1 if none."""
    depth = 0
    quote = None
    in_line = in_block = False
    i = open_pos
    while i < len(src):
        c = src[i]
        n = src[i + 1] if i + 1 < len(src) else ""
        if in_line:
            if c == "\n":
                in_line = False
        elif in_block:
            if c == "*" and n == "/":
                in_block = False
                i += 1
        elif quote:
            if c == "\\":
                i += 1
            elif c == quote:
                quote = None
        elif c == "/" and n == "/":
            in_line = True
            i += 1
        elif c == "/" and n == "*":
            in_block = True
            i += 1
        elif c in "'\"`":
            quote = c
        elif c == pair[0]:
            depth += 1
        elif c == pair[1]:
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _remove_block_at(src: str, start: int, to_semicolon: bool) -> str:
    search_from = start
    if not to_semicolon:
        # function: skip the parameter list, it may destructure with braces
        paren = src.find("(", start)
        close = find_matching_brace(src, paren, "()") if paren >= 0 else -1
        if close < 0:
            return src
        search_from = close
    brace = src.find("{", search_from)
    if brace < 0:
        return src
    end = find_matching_brace(src, brace)
    if end < 0:
        return src
    end += 1
    if to_semicolon:
        semi = src.find(";", end)
        nl = src.find("\n", end)
        if semi >= 0 and (nl < 0 or semi < nl):
            end = semi + 1
    while end < len(src) and src[end] in " \t\r\n":
        end += 1
    return src[:start] + src[end:]


def strip_metadata_exports(src: str) -> str:
    out = src
    m = RE_META_CONST.search(out)
    if m:
        out = _remove_block_at(out, m.start(), to_semicolon=True)
    m = RE_META_FUNC.search(out)
    if m:
        out = _remove_block_at(out, m.start(), to_semicolon=False)
    if not re.search(r"\bMetadata\b", RE_METADATA_TYPE_IMPORT.sub("", out)):
        out = RE_METADATA_TYPE_IMPORT.sub("", out)
    return out


def resolve_client_metadata_conflict(src: str) -> tuple[str, str]:
    """
    A "use client" file may not export metadata. Drop the marker when nothing
    client-only is used, otherwise drop the metadata exports.
    Returns (new_src, action) with action in {"", "removed-use-client", "removed-metadata"}.
    """
    if not (has_use_client(src) and has_metadata_export(src)):
        return src, ""
    if not uses_client_only(src):
        out = re.sub(r"^[ \t]*['\"]use client['\"][ \t]*;?[ \t]*\n?", "", src, count=1, flags=re.MULTILINE)
        return out.lstrip("\n"), "removed-use-client"
    return strip_metadata_exports(src), "removed-metadata"


# ── File helpers ──────────────────────────────────────────────────────────────

def _read(p: Path) -> str | None:
    try:
        return p.read_text(encoding="utf-8")
    except OSError:
        return None


def _write(p: Path, s: str):
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(s if s.endswith("\n") else s + "\n", encoding="utf-8")


def _read_json(p: Path) -> dict | None:
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else None
    except (OSError, ValueError):
        return None


def _write_json(p: Path, data: dict):
    _write(p, json.dumps(data, indent=2))


def rename_aside(p: Path):
    bak = p.with_name(p.name + ".bak")
    if bak.exists():
        bak.unlink()
    p.rename(bak)


def _first_existing(root: Path, rels: list[str]) -> Path | None:
    for rel in rels:
        if (root / rel).exists():
            return root / rel
    return None


# ── Source transforms ─────────────────────────────────────────────────────────

def convert_next_config_ts(ts: str) -> str:
    """Best-effort next.config.ts -> ESM JavaScript."""
    s = ts.replace("\r\n", "\n")
    s = re.sub(r"import\s+type\s*\{\s*NextConfig\s*\}\s*from\s*['\"]next['\"]\s*;?\s*", "", s)
    s = re.sub(r"import\s*\{\s*NextConfig\s*\}\s*from\s*['\"]next['\"]\s*;?\s*", "", s)
    s = re.sub(r":\s*NextConfig\b", "", s)
    s = re.sub(r"\s+satisfies\s+NextConfig\b", "", s)
    s = re.sub(r"module\.exports\s*=\s*", "export default ", s)
    if not re.search(r"export\s+default\b", s) and re.search(r"const\s+nextConfig\s*=", s):
        s += "\n\nexport default nextConfig;\n"
    return s if s.endswith("\n") else s + "\n"


def rewrite_geist_fonts(src: str) -> str:
    s = re.sub(
        r"import\s*\{\s*Geist\s*,\s*Geist_Mono\s*\}\s*from\s*['\"]next/font/google['\"];?",
        'import { Inter, Roboto_Mono } from "next/font/google";', src)
    s = re.sub(r"\bGeist_Mono\b", "Roboto_Mono", s)
    s = re.sub(r"\bGeist\b", "Inter", s)
    s = re.sub(r"subsets:\s*\[([^\]]+)\],\s*\}\);", r'subsets: [\1],\n  display: "swap",\n});', s)
    return s


def uses_tailwind_v4(globals_css: str | None, postcss_cfg: str | None) -> bool:
    css, pc = globals_css or "", postcss_cfg or ""
    return bool(
        re.search(r"@import\s+[\"']tailwindcss[\"']", css)
        or re.search(r"@theme\s+inline\b", css)
        or re.search(r"@custom-variant\s+dark\b", css)
        or "@tailwindcss/postcss" in pc
    )


def is_pages_router_layout(src: str) -> bool:
    return any(k in src for k in ("from 'next/app'", 'from "next/app"', "AppProps", "AppRouter", "function MyApp"))


# ── Fixups ────────────────────────────────────────────────────────────────────
# Each returns True when it changed something that needs a dependency re-install.

class _Pass:
    def __init__(self, root: Path, log_line):
        self.root = root
        self._log_line = log_line
        self.result = RepairResult()

    def note(self, msg: str):
        self.result.changes += 1
        log.info(f"   🛠 Repair: {msg}")
        if self._log_line:
            self._log_line(f"🛠 Repair: {msg}")

    def rel(self, p: Path) -> str:
        return p.relative_to(self.root).as_posix()

    def fix_next_config_format(self):
        ts = self.root / "next.config.ts"
        if not ts.exists():
            return False
        if (self.root / "next.config.mjs").exists() or (self.root / "next.config.js").exists():
            self.note("Removing unsupported next.config.ts (keeping existing JS/MJS config)")
        else:
            self.note("Migrating unsupported next.config.ts → next.config.mjs")
            src = _read(ts)
            if src:
                _write(self.root / "next.config.mjs", convert_next_config_ts(src))
        rename_aside(ts)
        return False

    def fix_tailwind_v4(self):
        globals_path = _first_existing(self.root, GLOBALS_CANDIDATES)
        postcss_path = _first_existing(self.root, POSTCSS_CANDIDATES)
        postcss_cfg = _read(postcss_path) if postcss_path else None
        if not uses_tailwind_v4(_read(globals_path) if globals_path else None, postcss_cfg):
            return False
        pkg_path = self.root / "package.json"
        pkg = _read_json(pkg_path)
        if pkg is None:
            return False

        reinstall = False
        if postcss_path is None:
            self.note("Adding missing PostCSS config for Tailwind v4 (postcss.config.mjs)")
            _write(self.root / "postcss.config.mjs", POSTCSS_V4)
            reinstall = True
        elif "@tailwindcss/postcss" not in (postcss_cfg or ""):
            self.note(f"Updating PostCSS config to Tailwind v4 (@tailwindcss/postcss): {self.rel(postcss_path)}")
            rename_aside(postcss_path)
            _write(self.root / "postcss.config.mjs", POSTCSS_V4)
            reinstall = True

        deps = pkg.setdefault("dependencies", {})
        dev = pkg.setdefault("devDependencies", {})
        changed = False
        if "tw-animate-css" not in deps and "tw-animate-css" not in dev:
            deps["tw-animate-css"] = TW_ANIMATE_CSS
            changed = True
        for name, pin in (("tailwindcss", TAILWIND_V4), ("@tailwindcss/postcss", TAILWIND_POSTCSS_V4)):
            if name not in deps and name not in dev:
                dev[name] = pin
                changed = True
            elif isinstance(dev.get(name), str) and dev[name].startswith("^3"):
                dev[name] = pin
                changed = True
        if changed:
            self.note("Ensuring Tailwind v4 dependencies are present in package.json")
            _write_json(pkg_path, pkg)
            reinstall = True
        return reinstall

    def fix_core_deps(self):
        pkg_path = self.root / "package.json"
        pkg = _read_json(pkg_path)
        if pkg is None:
            return False
        have = declared_deps(pkg)
        deps = pkg.setdefault("dependencies", {})
        pkg.setdefault("devDependencies", {})
        missing = [n for n in ("next", "react", "react-dom") if not have.get(n)]
        if not missing:
            return False
        for name in missing:
            deps[name] = NEXT_VERSION if name == "next" else REACT_VERSION
        self.note(f"Adding missing Next.js dependencies ({', '.join(missing)}) to package.json")
        _write_json(pkg_path, pkg)
        return True

    def fix_next_pwa(self):
        has_pwa = bool(declared_deps(_read_json(self.root / "package.json")).get("next-pwa"))
        cfg_path = _first_existing(self.root, ["next.config.mjs", "next.config.js"])
        if has_pwa or cfg_path is None:
            return False
        cfg = _read(cfg_path)
        if cfg and "next-pwa" in cfg:
            self.note("Disabling next-pwa in next.config (dependency missing)")
            rename_aside(cfg_path)
            _write(self.root / "next.config.mjs", MINIMAL_NEXT_CONFIG)
        return False

    def fix_layouts(self):
        for rel in LAYOUT_CANDIDATES:
            path = self.root / rel
            src = _read(path)
            if not src:
                continue
            if is_pages_router_layout(src):
                self.note(f"Rewriting invalid App Router layout: {rel}")
                _write(path, MINIMAL_LAYOUT)
                continue
            if "next/font/google" in src and "Geist" in src:
                self.note(f"Rewriting Geist font import to Inter/Roboto_Mono: {rel}")
                _write(path, rewrite_geist_fonts(src))
        return False

    def fix_client_metadata(self):
        for rel in PAGE_CANDIDATES:
            path = self.root / rel
            src = _read(path)
            if not src:
                continue
            out, action = resolve_client_metadata_conflict(src)
            if action == "removed-use-client":
                self.note(f"Removing unnecessary 'use client' from {rel} (to allow metadata export)")
            elif action == "removed-metadata":
                self.note(f"Removing metadata export from client page {rel} (Next.js disallows this)")
            if out != src:
                _write(path, out)
        return False

    def fix_button_stub(self):
        if (self.root / BUTTON_REL).exists():
            return False
        for rel in PAGE_CANDIDATES:
            src = _read(self.root / rel)
            if src and "Button" in src:
                self.note(f"Adding missing UI button component ({BUTTON_REL})")
                _write(self.root / BUTTON_REL, BUTTON_STUB)
                break
        return False

    def fix_button_imports(self):
        target = 'from "@/components/ui/button"'
        for rel in PAGE_CANDIDATES:
            path = self.root / rel
            src = _read(path)
            if not src:
                continue
            out = re.sub(r"from\s+['\"]@?shadcn/ui['\"]", target, src)
            out = re.sub(r"import\s*\{\s*Button\s*\}\s*from\s*['\"][^'\"]*['\"][ \t]*;?",
                         'import { Button } from "@/components/ui/button";', out)
            if out != src:
                self.note(f"Fixing bad Button import in {rel}")
                _write(path, out)
        return False

    def run(self) -> RepairResult:
        fixups = [
            self.fix_next_config_format, self.fix_tailwind_v4, self.fix_core_deps,
            self.fix_next_pwa, self.fix_layouts, self.fix_client_metadata,
            self.fix_button_stub, self.fix_button_imports,
        ]
        for fixup in fixups:
            try:
                if fixup():
                    self.result.reinstall_needed = True
            except Exception as e:
                log.warning(f"   ⚠ repair step {fixup.__name__} failed: {e}")
                if self._log_line:
                    self._log_line(f"⚠ Repair step {fixup.__name__} failed: {e}")
        return self.result


def repair_project(project_dir, log_line=None) -> RepairResult:
    """Apply every fixup to project_dir. log_line receives one human-readable line per change."""
    return _Pass(Path(project_dir), log_line).run()
