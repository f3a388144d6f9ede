"""
Prompt text and project context sent along with every model request.
"""
import json, re, textwrap
from pathlib import Path

SKIP_TREE_NAMES = {"node_modules", ".next", ".git", ".studio", "dist", "out"}
MAX_TREE_ENTRIES = 250
MAX_HINT_FILES   = 4
HINT_WINDOW      = 35
HINT_HEAD_LINES  = 220
HINT_MAX_CHARS   = 14000
HINT_EXTS        = ("tsx", "ts", "jsx", "js", "json", "css", "mjs", "cjs")

SYSTEM_PROMPT = textwrap.dedent("""\
    You are webforge, an expert Next.js (App Router) + Tailwind developer.

    Your job is to generate or modify code in the user's Next.js project.

    Hard requirements:
    - Use Next.js App Router conventions (app/ directory).
    - Use Tailwind for styling.
    - Prefer functional React components.
    - Do NOT use next/router or next/head in app/ (use next/navigation and metadata export instead).
    - If you use React hooks or next/navigation hooks, add a correct client directive: 'use client' (with quotes).
    - IMPORTANT: Never export metadata/generateMetadata from a file that has "use client". If you need client interactivity, keep metadata in src/app/layout.tsx or a server wrapper page that imports a Client Component.
    - Prefer Server Components for app/page.tsx; put hooks/handlers in small child components marked with "use client".
    - Prefer Tailwind classes in JSX. Avoid CSS modules with @apply unless absolutely necessary.
    - Output MUST be parseable by the app.

    Output format (VERY IMPORTANT):
    1) Start with a short plain-English summary (what you changed).
    2) Then, for every file you want to create or change, output:

    File: relative/path/from/project/root
    ```tsx
    ...full file content...
    ```

    3) If you introduce new npm dependencies, add a line:
    Dependencies: ["package-a","package-b"]

    Rules:
    - Always provide FULL file contents (not diffs).
    - Use relative paths only. Do NOT use absolute paths.
    - Do NOT output lists like "✅ Updated files:". Only use File blocks.
    - Do NOT include prose inside code fences.
    - If the user is asking for changes, ALWAYS output at least one File block (even if minimal). Only omit File blocks if the user is clearly asking a non-code question.
    """)

FORMAT_RETRY = textwrap.dedent("""\
    Your previous response could not be applied because it did NOT include any File blocks or Dependencies.
    Please try again and strictly follow the required output format.

    You MUST output at least one File: ... code block (full file contents) and/or a Dependencies: [...] line.
    Do not output bullet lists like "✅ Updated files:". Only use File blocks + optional Dependencies.""")

NO_CHANGES = ("AI did not return any file updates (no File blocks / Dependencies). "
              "Try a different model or re-run with a more specific prompt.")


def file_tree_context(project_dir) -> str:
    root = Path(project_dir)
    out: list[str] = []

    def walk(d: Path, prefix: str):
        for e in sorted(d.iterdir(), key=lambda p: p.name):
            if len(out) >= MAX_TREE_ENTRIES:
                return
            if e.name in SKIP_TREE_NAMES:
                continue
            rel = f"{prefix}{e.name}"
            if e.is_dir():
                out.append(rel + "/")
                walk(e, rel + "/")
            else:
                out.append(rel)

    walk(root, "")
    return "Project file tree (partial):\n" + "\n".join(f"- {p}" for p in out)


def _candidate(root: Path, raw: str) -> str | None:
    cleaned = raw.replace("\\", "/").strip()
    cleaned = re.sub(r"^\.?/", "", cleaned)
    if not cleaned or ".." in cleaned.split("/"):
        return None
    return cleaned if (root / cleaned).is_file() else None


def extract_file_hints(project_dir, text: str) -> list[tuple[str, int | None]]:
    """Up to 4 existing project files mentioned in text, as (rel_path, line or None)."""
    root = Path(project_dir)
    exts = "|".join(HINT_EXTS)
    out, seen = [], set()
    for m in re.finditer(rf"-\[([^\]:\n]+?\.(?:{exts})):(\d+):(\d+)\]", text or ""):
        rel = _candidate(root, m.group(1))
        if rel and rel not in seen:
            seen.add(rel)
            out.append((rel, int(m.group(2))))
            if len(out) >= MAX_HINT_FILES:
                return out
    generic = rf"(?:^|\s)(\.?/?(?:src|app|pages|components|lib|styles)[^\s'\"\]]+?\.(?:{exts}))"
    for m in re.finditer(generic, text or "", re.MULTILINE):
        rel = _candidate(root, m.group(1))
        if rel and rel not in seen:
            seen.add(rel)
            out.append((rel, None))
            if len(out) >= MAX_HINT_FILES:
                break
    return out


def file_content_context(project_dir, prompt: str) -> str:
    root = Path(project_dir)
    blocks = []
    for rel, line in extract_file_hints(root, prompt):
        try:
            lines = (root / rel).read_text(encoding="utf-8").replace("\r\n", "\n").split("\n")
        except (OSError, UnicodeDecodeError):
            continue
        if line:
            start = max(1, line - HINT_WINDOW)
            end = min(len(lines), line + HINT_WINDOW)
            snippet = f"// excerpt: lines {start}-{end}\n" + "\n".join(lines[start - 1:end])
        else:
            snippet = "\n".join(lines[:HINT_HEAD_LINES])
            if len(lines) > HINT_HEAD_LINES:
                snippet += f"\n// ... ({len(lines) - HINT_HEAD_LINES} more lines)"
        if len(snippet) > HINT_MAX_CHARS:
            snippet = snippet[:HINT_MAX_CHARS] + "\n// ... (truncated)"
        ext = rel.rsplit(".", 1)[-1].lower()
        lang = ext if ext in HINT_EXTS else "txt"
        blocks.append(f"Context file (read-only): {rel}\n```{lang}\n{snippet}\n```\n")

    if not blocks:
        return ""
    return "\n".join([
        "The following files are provided as read-only context from the current project state.",
        "When fixing errors, prefer minimal edits to these exact files.",
        "",
        *blocks,
    ])


def diagnostic_prompt(attempt: int, max_attempts: int, route: str, status: dict | None,
                      runtime_error: dict | None, logs: list[str]) -> str:
    parts = [
        f"The project's live preview is broken (auto-fix attempt {attempt} of {max_attempts}).",
        f'Goal: make the project run cleanly in a Next.js dev server and load the route "{route}" without errors.',
        "",
        "Preview status:",
        json.dumps(status, indent=2) if status else "unknown",
        "",
    ]
    if runtime_error:
        msg = "Runtime error (from the browser/iframe):\n" + (runtime_error.get("message") or "")
        if runtime_error.get("stack"):
            msg += "\n\n" + runtime_error["stack"]
        parts += [msg, ""]
    parts += [
        "Recent preview logs:",
        "```",
        *logs,
        "```",
        "",
        "Please fix the project so the preview works again.",
        "- Make the minimal changes needed.",
        "- If dependencies are missing, add them and include a Dependencies: [...] line.",
        "- Output any changed files using this exact format:",
        "  File: path/to/file\n  ```tsx\n  ...\n  ```",
    ]
    return "\n".join(p for p in parts if p is not None)


def format_reply(summary: str, written: list[str], installed: list[str], skipped: list[str],
                 had_file_blocks: bool) -> str:
    """Assistant message shown in the chat pane after an apply."""
    parts = [summary or "Done."]
    if written:
        parts += ["", "✅ Updated files:", *[f"- {f}" for f in written]]
    if installed:
        parts += ["", "📦 Installed dependencies:", *[f"- {d}" for d in installed]]
    if skipped:
        parts += ["", "⏭️ Skipped dependencies:", *[f"- {d}" for d in skipped]]
    if not had_file_blocks:
        parts += ["", "_No file blocks were returned by the model._"]
    return "\n".join(parts)
