"""The xray child process.

``XrayProcess`` owns one run of the engine: it writes the config file,
spawns the binary, keeps the tail of its output and reports how it ended.
"""

import asyncio
import logging
import os
from collections import deque
from pathlib import Path
from typing import Optional, Protocol as TypingProtocol

from xui_synth.engine import EngineConfig

logger = logging.getLogger(__name__)

OUTPUT_LINES = 100


class ProcessHandle(TypingProtocol):
    """What the supervisor needs from a started engine."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def is_running(self) -> bool: ...

    def get_err(self) -> Optional[Exception]: ...

    def get_version(self) -> str: ...

    def get_result(self) -> str: ...

    def get_api_port(self) -> int: ...

    def get_config(self) -> EngineConfig: ...


class XrayProcess:
    """One run of the xray binary.

    Attributes:
        config: The config this process was started with.
        binary: Path of the xray executable.
        config_path: Where the config is written before start.
    """

    def __init__(self, config: EngineConfig, binary: str | os.PathLike,
                 config_path: str | os.PathLike) -> None:
        self.config = config
        self.binary = str(binary)
        self.config_path = Path(config_path)
        self.version = "Unknown"
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._output: deque[str] = deque(maxlen=OUTPUT_LINES)
        self._err: Optional[Exception] = None
        self._stopping = False

    async def start(self) -> None:
        """Write the config and spawn ``xray -c <config>``.

        Raises:
            OSError: If the config cannot be written or the binary not run.
        """
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(self.config.to_json(), encoding="utf-8")
        self.version = await self._read_version()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.binary, "-c", str(self.config_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self._err = e
            raise
        logger.info("xray started, pid %s", self._proc.pid)
        self._reader = asyncio.create_task(self._collect_output(self._proc, self._proc.stdout))

    async def _read_version(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            out, _ = await proc.communicate()
        except OSError as e:
            logger.debug("Unable to read xray version: %s", e)
            return "Unknown"
        # "Xray 1.8.24 (Xray, Penetrates Everything.) ..."
        fields = out.decode(errors="replace").split()
        return fields[1] if len(fields) > 1 else "Unknown"

    async def _collect_output(self, proc: asyncio.subprocess.Process,
                              stdout: asyncio.StreamReader) -> None:
        async for raw in stdout:
            line = raw.decode(errors="replace").rstrip()
            self._output.append(line)
            logger.debug("xray: %s", line)
        code = await proc.wait()
        if code != 0 and self._err is None and not self._stopping:
            self._err = RuntimeError(f"xray exited with status {code}")

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def stop(self) -> None:
        if not self.is_running():
            return
        self._stopping = True
        try:
            self._proc.terminate()
        except ProcessLookupError:
            # exited between the check and the signal
            pass
        await self._proc.wait()
        if self._reader is not None:
            await self._reader
        logger.info("xray stopped")

    def get_err(self) -> Optional[Exception]:
        return self._err

    def get_version(self) -> str:
        return self.version

    def get_result(self) -> str:
        return "\n".join(self._output)

    def get_api_port(self) -> int:
        return self.config.api_port()

    def get_config(self) -> EngineConfig:
        return self.config
