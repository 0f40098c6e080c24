import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

# 스키마 변경은 항상 새 패치를 목록 끝에 추가합니다. 이미 배포된 패치는 수정하지 않습니다.
MIGRATIONS = [
    "CREATE TABLE machines ("
    "id TEXT NOT NULL PRIMARY KEY, "
    "name TEXT NOT NULL, "
    "label TEXT NOT NULL, "
    "state TEXT NOT NULL, "
    "version INTEGER NOT NULL, "
    "createdAt TEXT NOT NULL, "
    "modifiedAt TEXT)",
    "ALTER TABLE machines ADD COLUMN snapshotid TEXT",
    "CREATE INDEX ix_machines_label ON machines (label)",
]


def _ensure_version_table(conn: Connection):
    conn.execute(text("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"))


def get_schema_version(conn: Connection) -> int:
    """저장된 스키마 버전을 반환합니다. 아직 기록이 없으면 0입니다."""
    _ensure_version_table(conn)
    version = conn.execute(text("SELECT version FROM schema_version")).scalar()
    return version or 0


def _set_schema_version(conn: Connection, version: int):
    conn.execute(text("DELETE FROM schema_version"))
    conn.execute(text("INSERT INTO schema_version (version) VALUES (:version)"), {"version": version})


def apply_migrations(engine: Engine, target: Optional[int] = None) -> int:
    """
    저장된 버전 이후의 패치만 순서대로 한 번씩 적용합니다.

    Args:
        engine: 마이그레이션을 적용할 SQLAlchemy 엔진.
        target: 올리고자 하는 스키마 버전. 생략하면 최신 버전.

    Returns:
        적용 후의 스키마 버전.

    Raises:
        ValueError: target이 존재하는 패치 수보다 클 때.
    """
    if target is None:
        target = len(MIGRATIONS)
    if target > len(MIGRATIONS):
        raise ValueError(f"The requested schema version {target} is too high (latest: {len(MIGRATIONS)}).")

    with engine.begin() as conn:
        current = get_schema_version(conn)
        if current >= target:
            return current

        logger.info("Updating database schema from version %d to %d", current, target)
        for number, patch in enumerate(MIGRATIONS, start=1):
            if current < number <= target:
                logger.debug("Applying schema patch %d: %s", number, patch)
                conn.execute(text(patch))
        _set_schema_version(conn, target)

    return target
