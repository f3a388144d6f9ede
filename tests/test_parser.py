import pytest

from webforge.parser import FileEdit, normalize_path, parse_dependency_list, parse_response

PAGE = 'export default function Page() {\n  return <main className="p-8">Hi</main>;\n}'


def fence(body, info="tsx"):
    return f"```{info}\n{body}\n```"


# ── Round trip ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("n", [0, 1, 3])
def test_file_blocks_and_dependencies_are_recovered_in_order(n):
    summary = "I added the pages you asked for.\nEverything uses Tailwind."
    edits = [FileEdit(f"src/app/p{i}/page.tsx", f"export const n = {i};\n// line two") for i in range(n)]
    parts = [summary, ""]
    for e in edits:
        parts += [f"File: {e.path}", fence(e.content), ""]
    parts.append('Dependencies: ["lodash", "zod"]')
    raw = "\n".join(parts)

    res = parse_response(raw)

    assert res.files == edits
    assert res.dependencies == ["lodash", "zod"]
    assert res.raw == raw
    if n:
        assert res.summary == summary
    else:
        # no file trigger at all: summary is the whole text
        assert res.summary == raw.strip()


def test_plain_text_gives_no_edits_and_whole_summary():
    res = parse_response("  The project uses the App Router.\n  Nothing to change.  \n")
    assert res.files == []
    assert res.dependencies == []
    assert res.summary == "The project uses the App Router.\n  Nothing to change."
    assert not res.has_edits


@pytest.mark.parametrize("raw", [None, "", "```", "File:", "Dependencies:", "```tsx file=\n"])
def test_malformed_input_never_raises(raw):
    res = parse_response(raw)
    assert res.files == []


# ── Four equivalent file forms ────────────────────────────────────────────────

@pytest.mark.parametrize("raw", [
    f"Done.\n\nFile: src/app/page.tsx\n{fence(PAGE)}\n",
    f"Done.\n\n### src/app/page.tsx\n\n{fence(PAGE)}\n",
    f"Done.\n\n```tsx file=src/app/page.tsx\n{PAGE}\n```\n",
    f"Done.\n\n```file src/app/page.tsx\n{PAGE}\n```\n",
    f"Done.\n\n```tsx filename: src/app/page.tsx\n{PAGE}\n```\n",
    f"Done.\n\n```tsx\n// File: src/app/page.tsx\n{PAGE}\n```\n",
    f"Done.\n\n```tsx\n/* File: src/app/page.tsx */\n\n{PAGE}\n```\n",
    f"Done.\n\n```tsx\n<!-- File: src/app/page.tsx -->\n{PAGE}\n```\n",
    f"Done.\n\n```tsx\n# File: src/app/page.tsx\n{PAGE}\n```\n",
])
def test_all_file_forms_produce_the_same_edit(raw):
    res = parse_response(raw)
    assert res.files == [FileEdit("src/app/page.tsx", PAGE)]
    assert res.summary == "Done."


def test_marker_beyond_eighth_line_is_not_a_file():
    body = "\n".join(["// filler"] * 8 + ["// File: src/x.ts", "x"])
    res = parse_response("Intro\n" + fence(body, "ts"))
    assert res.files == []
    assert res.summary.startswith("Intro")


def test_path_is_normalized():
    res = parse_response(f"File: `./src/app/page.tsx`\n{fence('x')}\n- File: 'src/b.ts'\n{fence('y')}")
    assert [f.path for f in res.files] == ["src/app/page.tsx", "src/b.ts"]


def test_normalize_path_strips_bullet_quotes_and_dot_slash():
    assert normalize_path('- "./src/app/page.tsx"') == "src/app/page.tsx"
    assert normalize_path("  ") == ""


def test_unterminated_fence_runs_to_end_of_input():
    res = parse_response("File: src/a.ts\n```ts\nconst a = 1\nconst b = 2")
    assert res.files == [FileEdit("src/a.ts", "const a = 1\nconst b = 2")]


def test_summary_ends_at_first_file_trigger_not_at_plain_code():
    raw = "\n".join([
        "Run this first:",
        fence("npm run dev", "bash"),
        "Then:",
        fence("// File: src/app/page.tsx\nexport default function P() {}"),
        "File: src/lib/x.ts",
        fence("export const x = 1", "ts"),
    ])
    res = parse_response(raw)
    assert res.summary == "Run this first:\n```bash\nnpm run dev\n```\nThen:"
    assert [f.path for f in res.files] == ["src/app/page.tsx", "src/lib/x.ts"]


def test_duplicate_paths_are_kept_in_order():
    raw = f"File: a.ts\n{fence('one', 'ts')}\nFile: a.ts\n{fence('two', 'ts')}"
    assert [f.content for f in parse_response(raw).files] == ["one", "two"]


def test_code_inside_a_fence_is_not_scanned_for_triggers():
    body = "const s = `\nFile: src/evil.ts\n`;\nDependencies: [\"nope\"]"
    res = parse_response(f"File: src/a.ts\n```ts\n{body}\n```")
    assert res.files == [FileEdit("src/a.ts", body)]
    assert res.dependencies == []


# ── Dependencies ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw, expected", [
    ('Dependencies: ["framer-motion", "clsx"]', ["framer-motion", "clsx"]),
    ("Dependencies: framer-motion, 'clsx'", ["framer-motion", "clsx"]),
    ("- **Dependencies:** ignored", None),
    ("## Dependencies: [framer-motion]", ["framer-motion"]),
    ("Dependencies:\n- framer-motion\n- clsx\n\nAfter.", ["framer-motion", "clsx"]),
    ('Dependencies:\n[\n  "framer-motion",\n  "clsx"\n]', ["framer-motion", "clsx"]),
    ('dependencies: ["a", "a", " b ", "a"]', ["a", "b"]),
])
def test_dependency_forms(raw, expected):
    res = parse_response(raw)
    if expected is None:
        assert res.dependencies == []
    else:
        assert res.dependencies == expected


def test_dependencies_from_several_lines_are_merged():
    res = parse_response('Dependencies: ["a"]\ntext\nDependencies: ["b", "a"]')
    assert res.dependencies == ["a", "b"]


def test_dependency_dedupe_is_case_sensitive():
    assert parse_response('Dependencies: ["Foo", "foo"]').dependencies == ["Foo", "foo"]


def test_parse_dependency_list_bullets_need_two_lines_and_no_commas():
    assert parse_dependency_list("- a\n- b") == ["a", "b"]
    assert parse_dependency_list("- a") == ["- a"]
    assert parse_dependency_list("[a, b]") == ["a", "b"]
    assert parse_dependency_list('["x", 1, "y"]') == ["x", "y"]
