"""
Apply the SQL migrations in supabase/migrations by category.

Each .sql file is split into statements and executed through the `exec_sql`
RPC with the service-role key, so the function from
01_initial_setup/000_exec_sql.sql must exist (create it once in the
Supabase SQL editor).

Usage:
    python scripts/run_migrations.py all         # every category, in order
    python scripts/run_migrations.py list        # categories and file counts
    python scripts/run_migrations.py 03_payments # one category
"""

import os
import sys
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from supabase import create_client

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "supabase" / "migrations"

CATEGORIES = [
    "01_initial_setup",
    "02_storage",
    "03_payments",
    "04_generation_limits",
    "05_admin_panel",
    "06_token_tracking",
    "07_features",
    "08_rls_fixes",
]


def _is_comment_only(statement: str) -> bool:
    return all(not line.strip() or line.strip().startswith("--") for line in statement.splitlines())


def split_statements(sql: str) -> List[str]:
    """
    Split a migration file on `;`, dropping empty and comment-only chunks.

    Function bodies are wrapped in `$$ ... $$`; semicolons inside them do not
    end a statement.
    """
    statements = []
    current = []
    in_dollar_block = False
    for part in sql.split(";"):
        current.append(part)
        if part.count("$$") % 2 == 1:
            in_dollar_block = not in_dollar_block
        if in_dollar_block:
            continue
        statement = ";".join(current).strip()
        current = []
        if statement and not _is_comment_only(statement):
            statements.append(statement)
    leftover = ";".join(current).strip()
    if leftover and not _is_comment_only(leftover):
        statements.append(leftover)
    return statements


def migration_files(category: str) -> List[Path]:
    return sorted((MIGRATIONS_DIR / category).glob("*.sql"))


def run_sql_file(supabase, path: Path) -> bool:
    print(f"  📄 Running: {path.name}")
    try:
        for statement in split_statements(path.read_text(encoding="utf-8")):
            supabase.rpc("exec_sql", {"query": statement}).execute()
    except Exception as e:
        print(f"  ❌ Error: {e}\n")
        return False
    print("  ✅ Success\n")
    return True


def run_category(supabase, category: str) -> int:
    """Run every file of a category. Returns the number that succeeded."""
    files = migration_files(category)
    print(f"🚀 Running migrations for: {category}\n")
    succeeded = sum(1 for path in files if run_sql_file(supabase, path))
    print(f"✅ Completed {succeeded}/{len(files)} migration(s) for {category}\n")
    return succeeded


def list_categories():
    print("📋 Available migration categories:\n")
    for category in CATEGORIES:
        if (MIGRATIONS_DIR / category).is_dir():
            print(f"  {category} ({len(migration_files(category))} files)")
    print("")


def print_usage():
    print("Usage:")
    print("  python scripts/run_migrations.py all        - Run all migrations")
    print("  python scripts/run_migrations.py list       - List categories")
    print("  python scripts/run_migrations.py [category] - Run specific category")
    print("")
    list_categories()


def main(argv: List[str]) -> int:
    if not argv:
        print_usage()
        return 0

    target = argv[0]
    if target == "list":
        list_categories()
        return 0
    if target != "all" and target not in CATEGORIES:
        print(f"❌ Category not found: {target}")
        print_usage()
        return 1

    load_dotenv()
    load_dotenv('../.env')
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_KEY")
    if not url or not key:
        print("❌ Missing Supabase credentials")
        print("Required: SUPABASE_URL, SUPABASE_SERVICE_KEY")
        return 1

    supabase = create_client(url, key)
    if target == "all":
        print("🚀 Running ALL migrations in order...\n")
        for category in CATEGORIES:
            if (MIGRATIONS_DIR / category).is_dir():
                run_category(supabase, category)
        print("✅ All migrations completed!")
    else:
        run_category(supabase, target)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
