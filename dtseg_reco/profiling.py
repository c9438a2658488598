from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Optional, Union

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
    "nfl": pstats.SortKey.NFL,
}


def _resolve_sort_key(sort: Union[str, pstats.SortKey]) -> pstats.SortKey:
    """Map a string alias (``"tottime"``, ``"cumtime"``, ...) to a :class:`pstats.SortKey`; unknown names give ``TIME``."""
    if isinstance(sort, pstats.SortKey):
        return sort
    return _SORT_KEYS.get(str(sort).lower(), pstats.SortKey.TIME)


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: Union[str, pstats.SortKey] = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    dump_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
):
    r"""
    CPU profiler context manager around :class:`cProfile.Profile`.

    A no-op yielding ``None`` unless ``enable`` is set. On exit the profile is
    sorted with ``sort``, truncated to ``limit`` rows and written to
    ``out_path`` if given, else logged through ``logger`` if given, else
    printed. ``dump_path`` additionally writes a binary ``.pstats`` file.

    Examples
    --------
    >>> with prof(True, sort="cumtime", limit=20):
    ...     reco.reconstruct(sl, pairs)
    """
    if not enable:
        yield None
        return

    pr = cProfile.Profile()
    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        t1 = time.perf_counter()

        s = io.StringIO()
        ps = pstats.Stats(pr, stream=s)
        ps.strip_dirs()
        ps.sort_stats(_resolve_sort_key(sort))
        ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={t1 - t0:.6f}s sort={sort} limit={limit}\n" + s.getvalue()

        if dump_path:
            ps.dump_stats(dump_path)

        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(text)
        elif logger is not None:
            logger.info(text)
        else:
            print(text, end="")
