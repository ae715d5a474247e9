import re

RECORD_TABLE = "visit_record"
COUNT_VIEW = "visit_count_view"
COUNT_VIEW_TRIGGER = "visit_count_view_trigger"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


def resolve_name(kind: str, domain: str) -> str:
    """Storage object name for ``kind`` scoped to a tenant domain.

    Every character outside ``[A-Za-z0-9_]`` becomes ``_``, so ``a.b`` and
    ``a-b`` map to the same name. Collisions are not detected here.
    """
    return _UNSAFE_CHARS.sub("_", f"{kind}_{domain}")


def legacy_names_for_table(table_name: str) -> tuple[str, str]:
    # Record tables are always "visit_record_<suffix>"; the legacy objects share the suffix.
    suffix = table_name[len(RECORD_TABLE) + 1 :]
    return f"{COUNT_VIEW}_{suffix}", f"{COUNT_VIEW_TRIGGER}_{suffix}"
