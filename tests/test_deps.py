import pytest

from webforge.deps import (block_reason, filter_valid, infer_dependencies, is_next_project,
                           package_of, read_manifest, split_buckets)
from webforge.parser import FileEdit

from .conftest import write


@pytest.mark.parametrize("name", [
    "@next/navigation", "@next/font", "next/link", "next/navigation", "next/image",
    "lodash/debounce", "@tailwindcss/typography", "@tailwindcss/base", "tailwindcss/utilities",
    "shadcn/ui", "shadcn", "ui", "@vercel/preact", "@vercel/preact@1.0.0",
    "github:user/repo", "git+https://x.org/y.git", "https://github.com/a/b", "some/thing.git",
    "react icons", "",
])
def test_blocked_names(name):
    assert block_reason(name, is_next_project=True)


@pytest.mark.parametrize("name", [
    "lodash", "zod", "framer-motion", "@tailwindcss/postcss", "@radix-ui/react-dialog",
    "@types/node", "next", "clsx@2.1.0", "tailwindcss",
])
def test_allowed_names(name):
    assert block_reason(name, is_next_project=True) == ""


@pytest.mark.parametrize("name", ["react-router-dom", "react-router", "react-router-dom@6"])
def test_competing_router_only_blocked_for_next_projects(name):
    assert block_reason(name, is_next_project=True)
    assert block_reason(name, is_next_project=False) == ""


def test_filter_valid_keeps_order_and_trims():
    names = [" zod ", "@next/navigation", "lodash", "lodash/debounce", "  ", "axios"]
    assert filter_valid(names, is_next_project=True) == ["zod", "lodash", "axios"]


def test_filter_valid_is_idempotent():
    names = ["zod", "@next/font", "react-router-dom", "clsx", "@types/react", "x/y"]
    once = filter_valid(names, True)
    assert filter_valid(once, True) == once


def test_split_buckets_sends_type_packages_to_dev():
    assert split_buckets(["zod", "@types/lodash", "lodash", "@types/node"]) == (
        ["zod", "lodash"], ["@types/lodash", "@types/node"])


# ── Manifest ──────────────────────────────────────────────────────────────────

def test_is_next_project_reads_both_dependency_tables(tmp_path):
    write(tmp_path, "package.json", '{"devDependencies": {"next": "15.0.0"}}')
    assert is_next_project(read_manifest(tmp_path))


def test_is_next_project_false_without_next_or_manifest(tmp_path):
    assert not is_next_project(read_manifest(tmp_path))
    write(tmp_path, "package.json", '{"dependencies": {"vite": "5"}}')
    assert not is_next_project(read_manifest(tmp_path))
    write(tmp_path, "package.json", "{broken")
    assert read_manifest(tmp_path) is None


# ── Import scanning ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("spec, pkg", [
    ("lodash/debounce", "lodash"),
    ("@radix-ui/react-dialog/dist", "@radix-ui/react-dialog"),
    ("./Button", None),
    ("@/components/ui/button", None),
    ("node:fs", None),
    ("path", None),
    ("@scoped", None),
    ("framer-motion", "framer-motion"),
])
def test_package_of(spec, pkg):
    assert package_of(spec) == pkg


def test_infer_dependencies_scans_only_script_files():
    files = [
        FileEdit("src/app/page.tsx",
                 "import { motion } from 'framer-motion'\nimport x from \"./x\"\nimport { z } from 'zod'\n"),
        FileEdit("src/lib/a.js", "const _ = require('lodash');\nimport('zod')"),
        FileEdit("src/app/globals.css", "@import 'tailwindcss';\n/* from 'nope' */"),
    ]
    assert infer_dependencies(files) == ["framer-motion", "zod", "lodash"]
