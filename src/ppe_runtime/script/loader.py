from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from ..cache import Cache, TTLCache
from ..constants import SCRIPT_SUFFIX
from ..errors import ScriptNotFoundError
from .models import Script
from .parser import parse_file

logger = logging.getLogger(__name__)


@dataclass
class ScriptLoader:
    """Resolves script names to files and caches parsed scripts by canonical path.

    The cache is owned by the loader instance; share one loader between
    engines to share parsed scripts.
    """

    search_paths: List[Path] = field(default_factory=list)
    cache: Cache = field(default_factory=TTLCache)
    ttl: Optional[float] = None

    def resolve(self, name: str, relative_to: Optional[Union[str, Path]] = None) -> Path:
        bases: List[Path] = []
        if relative_to is not None:
            rel = Path(relative_to)
            bases.append(rel.parent if rel.suffix or rel.is_file() else rel)
        bases.extend(self.search_paths)
        bases.append(Path.cwd())

        tried: List[str] = []
        for base in bases:
            for candidate in self._candidates(base / name):
                tried.append(str(candidate))
                if candidate.is_file():
                    return candidate.resolve()
        raise ScriptNotFoundError(name, tried)

    @staticmethod
    def _candidates(path: Path) -> List[Path]:
        out = []
        if path.name.endswith(SCRIPT_SUFFIX):
            out.append(path)
        else:
            out.append(path.with_name(path.name + SCRIPT_SUFFIX))
        # directory-form script: <dir>/<dirname>.ai.yaml
        out.append(path / f"{path.name}{SCRIPT_SUFFIX}")
        out.append(path)
        return out

    def load_path(self, path: Union[str, Path]) -> Script:
        p = Path(path)
        if p.is_dir():
            p = p / f"{p.name}{SCRIPT_SUFFIX}"
        if not p.is_file():
            raise ScriptNotFoundError(str(path), [str(p)])
        canonical = p.resolve()
        mtime = canonical.stat().st_mtime_ns
        return self.cache.get_or_compute(
            str(canonical),
            self.ttl,
            lambda: self._parse(canonical),
            fingerprint=mtime,
        )

    def load(self, name: str, relative_to: Optional[Union[str, Path]] = None) -> Script:
        return self.load_path(self.resolve(name, relative_to))

    def _parse(self, path: Path) -> Script:
        logger.debug(f"Parsing script {path}")
        return parse_file(path)
