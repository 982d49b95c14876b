"""ObjectStore protocol and artifact naming for export results.

Every artifact name is derived from the job's execution id, so re-running a
stage after a crash overwrites its earlier output instead of adding to it::

    {execution_id}.csv
    {execution_id}/{report name}_{YYYY-MM-DD}.xlsx
    {execution_id}.zip

"""

from __future__ import annotations

import re
import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

_UNSAFE_NAME_CHARS = re.compile(r"[^\w\- ]+")


def raw_result_key(execution_id: str) -> str:
    """Return the location of a job's raw CSV result."""
    return f"{execution_id}.csv"


def spreadsheet_key(
    execution_id: str,
    report_name: str,
    export_date: dt.date,
    *,
    limit: int = 30,
) -> str:
    """Return the location of a job's spreadsheet.

    The report name is stripped of path and punctuation characters and
    truncated to ``limit`` characters.

    Examples
    --------
    >>> import datetime as dt
    >>> spreadsheet_key("e1", "Q3 / revenue: by region", dt.date(2024, 7, 1))
    'e1/Q3 _ revenue_ by region_2024-07-01.xlsx'

    """
    name = _UNSAFE_NAME_CHARS.sub("_", report_name).strip()[:limit] or "report"
    return f"{execution_id}/{name}_{export_date.isoformat()}.xlsx"


def archive_key(execution_id: str) -> str:
    """Return the location of a job's compressed archive."""
    return f"{execution_id}.zip"


@typ.runtime_checkable
class ObjectStore(typ.Protocol):
    """Protocol for storing export artifacts."""

    async def exists(self, location: str) -> bool:
        """Return True when an artifact is stored at ``location``."""
        ...

    async def write_result(
        self, location: str, rows: cabc.AsyncIterator[cabc.Sequence[object]]
    ) -> str:
        """Write tabular ``rows`` as CSV at ``location`` and return it."""
        ...

    async def convert_to_spreadsheet(self, source: str, target: str) -> str:
        """Convert the CSV at ``source`` to a spreadsheet at ``target``."""
        ...

    async def compress(self, source: str, target: str) -> str:
        """Compress the artifact at ``source`` into ``target``."""
        ...

    async def download_url(self, location: str, ttl: dt.timedelta) -> str:
        """Return a URL for ``location`` that stays valid for ``ttl``."""
        ...
