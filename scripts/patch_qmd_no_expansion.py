"""Patch qmd's store.ts so `qmd vsearch` can skip query expansion.

After patching, vsearch runs embedding-only when the environment carries
QMD_VSEARCH_DISABLE_EXPANSION=1, which is what the memory engine sets once it
detects the patch.

Usage:
    python scripts/patch_qmd_no_expansion.py
    python scripts/patch_qmd_no_expansion.py /custom/path/to/store.ts

Exit codes: 0 patched or already patched, 1 target missing, 2 anchor not found.
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

QMD_DISABLE_EXPANSION_ENV = "QMD_VSEARCH_DISABLE_EXPANSION"
QMD_BUN_STORE_TS = (
    Path.home() / ".bun" / "install" / "global" / "node_modules" / "qmd" / "src" / "store.ts"
)

ANCHOR_RE = re.compile(
    r"  // Expand query — filter to vec/hyde only \(lex queries target FTS, not vector\)\n"
    r"  const allExpanded = await store\.expandQuery\(query\);\n"
    r"  const vecExpanded = allExpanded\.filter\(q => q\.type !== 'lex'\);\n"
    r"  options\?\.hooks\?\.onExpand\?\.\(query, vecExpanded\);"
)

REPLACEMENT = "\n".join(
    [
        "  // Optional: disable query expansion to run embedding-only vector search.",
        f"  const disableExpansion = process.env.{QMD_DISABLE_EXPANSION_ENV} === '1';",
        "  const vecExpanded = disableExpansion",
        "    ? []",
        "    : (await store.expandQuery(query)).filter(q => q.type !== 'lex');",
        "  options?.hooks?.onExpand?.(query, vecExpanded);",
    ]
)


def patch_store(target: Path) -> int:
    """Patch target in place. Returns a process exit code."""
    if not target.is_file():
        print(f"Target file not found: {target}", file=sys.stderr)
        return 1

    src = target.read_text(encoding="utf-8")
    if QMD_DISABLE_EXPANSION_ENV in src:
        print(f"Already patched: {target}")
        return 0

    patched, count = ANCHOR_RE.subn(lambda _: REPLACEMENT, src, count=1)
    if count == 0:
        print("Patch anchor not found. qmd source layout may have changed.", file=sys.stderr)
        return 2

    target.write_text(patched, encoding="utf-8")
    print(f"Patched: {target}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "target",
        nargs="?",
        type=Path,
        default=QMD_BUN_STORE_TS,
        help=f"path to qmd src/store.ts (default: {QMD_BUN_STORE_TS})",
    )
    args = parser.parse_args(argv)
    return patch_store(args.target)


if __name__ == "__main__":
    sys.exit(main())
