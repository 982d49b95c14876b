r"""Filesystem adapter for the ObjectStore protocol.

Artifacts live under a root directory using the names produced by
``sluice.exports.artifacts``::

    {root}/{execution_id}.csv
    {root}/{execution_id}/{report name}_{date}.xlsx
    {root}/{execution_id}.zip

Download URLs are ``file://`` URIs carrying an ``expires`` query parameter
(Unix seconds); nothing enforces the expiry on a local filesystem.

Usage
-----
>>> store = FilesystemObjectStore(Path("/var/lib/sluice/exports"))
>>> await store.download_url("e1.zip", dt.timedelta(hours=1))
'file:///var/lib/sluice/exports/e1.zip?expires=...'

"""

from __future__ import annotations

import asyncio
import csv
import typing as typ
import urllib.parse
import zipfile

from openpyxl import Workbook

from sluice.common.time import utcnow

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt
    from pathlib import Path


def _write_csv(path: Path, rows: list[cabc.Sequence[object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        csv.writer(handle).writerows(rows)


def _csv_to_xlsx(source: Path, target: Path) -> None:
    workbook = Workbook(write_only=True)
    sheet = workbook.create_sheet()
    with source.open(encoding="utf-8", newline="") as handle:
        for row in csv.reader(handle):
            sheet.append(row)
    target.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(target)


def _zip_file(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.write(source, arcname=source.name)


class FilesystemObjectStore:
    """Store export artifacts on the local filesystem.

    Parameters
    ----------
    root
        Directory under which every artifact is written.
    clock
        Returns the current aware UTC time; used for URL expiry.

    """

    def __init__(
        self,
        root: Path,
        *,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Initialise the store with its root directory."""
        self._root = root
        self._clock = clock

    def path_for(self, location: str) -> Path:
        """Return the filesystem path of ``location``."""
        return self._root / location

    async def exists(self, location: str) -> bool:
        """Return True when a file is stored at ``location``."""
        return await asyncio.to_thread(self.path_for(location).is_file)

    async def write_result(
        self, location: str, rows: cabc.AsyncIterator[cabc.Sequence[object]]
    ) -> str:
        """Write ``rows`` as CSV at ``location``."""
        buffered = [row async for row in rows]
        await asyncio.to_thread(_write_csv, self.path_for(location), buffered)
        return location

    async def convert_to_spreadsheet(self, source: str, target: str) -> str:
        """Convert the CSV at ``source`` into an xlsx workbook at ``target``."""
        await asyncio.to_thread(
            _csv_to_xlsx, self.path_for(source), self.path_for(target)
        )
        return target

    async def compress(self, source: str, target: str) -> str:
        """Zip the artifact at ``source`` into ``target``."""
        await asyncio.to_thread(_zip_file, self.path_for(source), self.path_for(target))
        return target

    async def download_url(self, location: str, ttl: dt.timedelta) -> str:
        """Return a ``file://`` URI for ``location`` expiring after ``ttl``."""
        expires = int((self._clock() + ttl).timestamp())
        uri = self.path_for(location).resolve().as_uri()
        return f"{uri}?{urllib.parse.urlencode({'expires': expires})}"
