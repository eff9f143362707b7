"""Fetcher backends that supply new binaries to the master.

Key Components:
    - HTTPFetcher: Polls an HTTP(S) URL, using check headers to skip
      unchanged binaries
    - FileFetcher: Polls a local file's modification time and size

Any object implementing overseer.Fetcher can be used instead.
"""

from ._file import FileFetcher
from ._http import HTTPFetcher

__all__ = ["FileFetcher", "HTTPFetcher"]
