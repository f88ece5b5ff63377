"""
Local filesystem connector.

Enumerates files under the configured root directories and fuzzy-matches
their basenames against the query. An empty query returns a plain
listing of the first LISTING_LIMIT files.
"""

import asyncio
import fnmatch
import logging
import os
from typing import Optional

import httpx
from rapidfuzz import fuzz, process, utils

from config import LocalConfig

from .base import SearchResult, SourceConnector

logger = logging.getLogger(__name__)


class LocalFilesystemConnector(SourceConnector):
    """Fuzzy filename search over local directories."""

    provider = "local"
    display_name = "Local Filesystem"
    source_prefixes = ("local",)

    LISTING_LIMIT = 2000

    # Keep matches whose score (1 - similarity) is at most this
    MATCH_THRESHOLD = 0.4

    async def search(
        self, query: str, client: Optional[httpx.AsyncClient] = None
    ) -> list[SearchResult]:
        local = self.config.local
        if not local.enabled:
            logger.info("Local filesystem source is disabled in config")
            return []

        listing = not query or not query.strip()
        limit = self.LISTING_LIMIT if listing else None

        try:
            files = await asyncio.to_thread(self.enumerate_files, local, limit)
        except OSError as e:
            logger.warning(f"Local filesystem enumeration failed: {e!r}")
            return []

        if listing:
            return files[: self.LISTING_LIMIT]
        return self.fuzzy_match(query, files)

    # =========================================================================
    # Enumeration
    # =========================================================================

    @staticmethod
    def _is_excluded(path: str, patterns: tuple[str, ...], is_dir: bool = False) -> bool:
        """Check a path against the exclude globs (full path or basename)."""
        name = os.path.basename(path.rstrip(os.sep))
        candidates = [path, name]
        if is_dir:
            candidates.append(path.rstrip(os.sep) + os.sep)
        return any(
            fnmatch.fnmatch(candidate, pattern)
            for pattern in patterns
            for candidate in candidates
        )

    def enumerate_files(self, local: LocalConfig, limit: Optional[int] = None) -> list[SearchResult]:
        """
        Walk the include roots and build a result per regular file.

        Hidden files and directories are skipped. Symlinks are followed
        only when follow_symlinks is set; already-visited directories are
        not walked twice.
        """
        roots = [p for p in local.include if os.path.isdir(p)]
        missing = set(local.include) - set(roots)
        for path in sorted(missing):
            logger.warning(f"Local include directory not found: {path}")
        if not roots:
            logger.warning("No existing local include directories configured")
            return []

        results: list[SearchResult] = []
        seen_paths: set[str] = set()
        visited_dirs: set[str] = set()

        for root in roots:
            for dirpath, dirnames, filenames in os.walk(root, followlinks=local.follow_symlinks):
                real_dir = os.path.realpath(dirpath)
                if real_dir in visited_dirs:
                    dirnames[:] = []
                    continue
                visited_dirs.add(real_dir)

                dirnames[:] = sorted(
                    d
                    for d in dirnames
                    if not d.startswith(".")
                    and not self._is_excluded(os.path.join(dirpath, d), local.exclude_globs, is_dir=True)
                )

                for filename in sorted(filenames):
                    if filename.startswith("."):
                        continue
                    file_path = os.path.abspath(os.path.join(dirpath, filename))
                    if file_path in seen_paths:
                        continue
                    if self._is_excluded(file_path, local.exclude_globs):
                        continue
                    if os.path.islink(file_path) and not local.follow_symlinks:
                        continue

                    result = self._file_result(file_path, local.account)
                    if result is None:
                        continue
                    seen_paths.add(file_path)
                    results.append(result)

                    if limit is not None and len(results) >= limit:
                        return results

        logger.debug(f"Enumerated {len(results)} local files")
        return results

    def _file_result(self, file_path: str, account: str) -> Optional[SearchResult]:
        try:
            stat = os.stat(file_path)
        except OSError as e:
            logger.debug(f"Failed to stat {file_path}: {e}")
            return None
        return SearchResult(
            id=f"local:{file_path}",
            title=os.path.basename(file_path),
            source="local",
            account=account,
            url=file_path,
            path=file_path,
            modified=int(stat.st_mtime * 1000),
            size=stat.st_size,
        )

    # =========================================================================
    # Matching
    # =========================================================================

    def fuzzy_match(self, query: str, files: list[SearchResult]) -> list[SearchResult]:
        """
        Rank files by approximate basename similarity to the query.

        score = 1 - similarity/100 (0 is a perfect match); files above
        MATCH_THRESHOLD are dropped. Ties keep enumeration order.
        """
        if not files:
            return []

        cutoff = (1 - self.MATCH_THRESHOLD) * 100
        matches = process.extract(
            query,
            [f.title for f in files],
            scorer=fuzz.WRatio,
            processor=utils.default_process,
            score_cutoff=cutoff,
            limit=None,
        )

        scored = []
        for _title, similarity, index in matches:
            result = files[index]
            result.score = round(1 - similarity / 100, 4)
            scored.append((result.score, index, result))

        scored.sort(key=lambda item: (item[0], item[1]))
        logger.info(f"Local search for {query!r}: {len(scored)} matches in {len(files)} files")
        return [result for _score, _index, result in scored]
