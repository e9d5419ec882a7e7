"""Unit tests for model column types."""

from __future__ import annotations

from sqlalchemy import DateTime
from sqlmodel import SQLModel

import petrel.models  # noqa: F401
from petrel.models import Volume
from petrel.utils.datetime import utcnow


def _datetime_columns() -> dict[str, DateTime]:
    return {
        f"{table.name}.{column.name}": column.type
        for table in SQLModel.metadata.sorted_tables
        for column in table.columns
        if isinstance(column.type, DateTime)
    }


class TestTimestampColumns:
    def test_every_timestamp_is_a_datetime_column(self):
        assert set(_datetime_columns()) == {
            "api_tokens.created_at",
            "api_tokens.expires_at",
            "api_tokens.last_used_at",
            "quota_policies.updated_at",
            "quota_usage.updated_at",
            "update_jobs.created_at",
            "volumes.created_at",
            "volumes.updated_at",
            "workloads.created_at",
            "workloads.started_at",
            "workloads.updated_at",
        }

    def test_timestamps_are_stored_naive(self):
        assert all(not column.timezone for column in _datetime_columns().values())

    async def test_naive_utc_round_trip(self, db_session):
        stamp = utcnow()
        db_session.add(Volume(name="vol-1", owner="alice", created_at=stamp, updated_at=stamp))
        await db_session.commit()

        volume = await db_session.get(Volume, "vol-1", populate_existing=True)

        assert volume.created_at == stamp
        assert volume.created_at.tzinfo is None
