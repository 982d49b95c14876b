"""Unit tests for the filesystem object store."""

from __future__ import annotations

import csv
import datetime as dt
import typing as typ
import urllib.parse
import zipfile

import pytest
from openpyxl import load_workbook

from sluice.exports import FilesystemObjectStore, ObjectStore

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

T0 = dt.datetime(2024, 7, 14, 9, 0, tzinfo=dt.UTC)
ROWS: list[list[object]] = [["region", "revenue"], ["emea", 10], ["apac", 7]]


async def _rows() -> cabc.AsyncIterator[list[object]]:
    for row in ROWS:
        yield row


@pytest.fixture
def store(tmp_path: Path) -> FilesystemObjectStore:
    """Return a store rooted in a temporary directory."""
    return FilesystemObjectStore(tmp_path, clock=lambda: T0)


class TestFilesystemObjectStore:
    """Tests for writing, converting, and compressing artifacts."""

    def test_satisfies_protocol(self, store: FilesystemObjectStore) -> None:
        """The adapter implements ObjectStore."""
        assert isinstance(store, ObjectStore)

    @pytest.mark.asyncio
    async def test_writes_csv(self, store: FilesystemObjectStore) -> None:
        """Result rows are written as CSV, header first."""
        location = await store.write_result("e1.csv", _rows())

        with store.path_for(location).open(encoding="utf-8", newline="") as handle:
            written = list(csv.reader(handle))

        assert await store.exists("e1.csv") is True
        assert written == [["region", "revenue"], ["emea", "10"], ["apac", "7"]]

    @pytest.mark.asyncio
    async def test_missing_artifact_does_not_exist(
        self, store: FilesystemObjectStore
    ) -> None:
        """Unknown locations report False."""
        assert await store.exists("nope.csv") is False

    @pytest.mark.asyncio
    async def test_converts_to_spreadsheet(self, store: FilesystemObjectStore) -> None:
        """The CSV becomes a workbook at the nested target path."""
        await store.write_result("e1.csv", _rows())

        target = await store.convert_to_spreadsheet(
            "e1.csv", "e1/Revenue_2024-07-14.xlsx"
        )
        workbook = load_workbook(store.path_for(target), read_only=True)
        values = [list(row) for row in workbook.active.iter_rows(values_only=True)]
        workbook.close()

        assert values == [["region", "revenue"], ["emea", "10"], ["apac", "7"]]

    @pytest.mark.asyncio
    async def test_compresses_artifact(self, store: FilesystemObjectStore) -> None:
        """Compression stores the artifact under its own name in a zip."""
        await store.write_result("e1.csv", _rows())

        target = await store.compress("e1.csv", "e1.zip")
        with zipfile.ZipFile(store.path_for(target)) as archive:
            names = archive.namelist()

        assert names == ["e1.csv"]

    @pytest.mark.asyncio
    async def test_download_url_carries_expiry(
        self, store: FilesystemObjectStore
    ) -> None:
        """Download URLs are file URIs with an expiry timestamp."""
        url = await store.download_url("e1.zip", dt.timedelta(hours=1))
        parsed = urllib.parse.urlsplit(url)

        assert parsed.scheme == "file"
        assert parsed.path.endswith("/e1.zip")
        assert urllib.parse.parse_qs(parsed.query) == {
            "expires": [str(int((T0 + dt.timedelta(hours=1)).timestamp()))]
        }
