"""Locates the yt-dlp, ffmpeg and ffprobe executables and reports their versions."""
import os
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS, SYSTEM_BINARY_DIRS


class BinaryLocator:
    """Finds external tools, preferring a bundled `bin/` directory, and caches the results."""

    def __init__(self, app_path: Path = APP_PATH, search_dirs=SYSTEM_BINARY_DIRS):
        self.app_path = app_path
        self.search_dirs = tuple(search_dirs)
        self.logger = logging.getLogger(__name__)
        self._cache: Dict[str, Optional[Path]] = {}

    def invalidate_cache(self):
        """Forgets earlier lookups (e.g. after the user installed a missing tool)."""
        self._cache.clear()

    @property
    def yt_dlp_path(self) -> Optional[Path]:
        return self.locate('yt-dlp')

    @property
    def ffmpeg_path(self) -> Optional[Path]:
        return self.locate('ffmpeg')

    @property
    def ffprobe_path(self) -> Optional[Path]:
        return self.locate('ffprobe')

    def locate(self, name: str) -> Optional[Path]:
        if name not in self._cache:
            self._cache[name] = self._find_executable(name)
            self.logger.info(f"{name} path: {self._cache[name]}")
        return self._cache[name]

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        filename = f'{name}.exe' if sys.platform == 'win32' else name
        candidates = [self.app_path / 'bin' / filename, self.app_path / filename]
        candidates.extend(Path(directory) / filename for directory in self.search_dirs)
        for candidate in candidates:
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if executable_path.name.lower().startswith(('ffmpeg', 'ffprobe')):
                command.append('-version')
            else:
                command.append('--version')

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
