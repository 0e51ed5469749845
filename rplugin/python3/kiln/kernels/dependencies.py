"""
Checks for and installs the packages a Python kernel needs (ipykernel).
"""
import asyncio
import enum
import logging
import sys
from typing import Dict, Optional

from .errors import KernelDependencyError
from .types import DisplayOptions, PythonEnvironment

INSTALL_OPTION = "Install"
SELECT_ANOTHER_OPTION = "Select Another Kernel"


class DependencyResponse(str, enum.Enum):
    OK = "ok"
    SELECT_ANOTHER = "selectAnother"
    CANCEL = "cancel"
    FAILED = "failed"


class KernelDependencyService:
    """
    The dependency manager used by error recovery.

    Only one install runs per interpreter; concurrent requests for the same
    interpreter share its outcome.
    """

    def __init__(self, interpreters, prompt, module: str = "ipykernel", timeout: float = 300.0):
        self.interpreters = interpreters
        self.prompt = prompt
        self.module = module
        self.timeout = timeout
        self._installs: Dict[str, "asyncio.Future[DependencyResponse]"] = {}
        self._logger = logging.getLogger("kiln.dependencies")

    async def _run(self, *args: str, timeout: float) -> int:
        proc = await asyncio.create_subprocess_exec(
            *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            raise
        if proc.returncode != 0:
            self._logger.debug(f"{' '.join(args)} failed: {stderr.decode(errors='replace')}")
        return proc.returncode

    async def are_dependencies_installed(self, interpreter: Optional[PythonEnvironment]) -> bool:
        path = interpreter.path if interpreter else sys.executable
        try:
            return await self._run(path, "-c", f"import {self.module}", timeout=30.0) == 0
        except (OSError, asyncio.TimeoutError) as e:
            self._logger.warning(f"Could not check for {self.module} in {path}: {e}")
            return False

    async def install_missing_dependencies(self, error: KernelDependencyError,
                                           display: Optional[DisplayOptions] = None) -> DependencyResponse:
        metadata = error.metadata
        interpreter = getattr(metadata, "interpreter", None) or await self.interpreters.get_active_interpreter()
        if interpreter is None:
            self._logger.error("No interpreter available to install dependencies into")
            return DependencyResponse.FAILED

        if await self.are_dependencies_installed(interpreter):
            return DependencyResponse.OK

        if display is not None and display.disable_ui:
            return DependencyResponse.CANCEL

        pending = self._installs.get(interpreter.path)
        if pending is None:
            pending = asyncio.ensure_future(self._prompt_and_install(interpreter))
            self._installs[interpreter.path] = pending
            pending.add_done_callback(lambda _: self._installs.pop(interpreter.path, None))
        return await asyncio.shield(pending)

    async def _prompt_and_install(self, interpreter: PythonEnvironment) -> DependencyResponse:
        name = interpreter.display_name or interpreter.path
        choice = await self.prompt.show_error_message(
            f"Running cells with '{name}' requires the {self.module} package. Install it?",
            INSTALL_OPTION,
            SELECT_ANOTHER_OPTION,
        )
        if choice == SELECT_ANOTHER_OPTION:
            return DependencyResponse.SELECT_ANOTHER
        if choice != INSTALL_OPTION:
            return DependencyResponse.CANCEL

        self._logger.info(f"Installing {self.module} into {interpreter.path}")
        await self.prompt.show_info_message(f"Installing {self.module} into {name}...")
        try:
            code = await self._run(interpreter.path, "-m", "pip", "install", "-U", self.module, timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self._logger.error(f"Installing {self.module} failed: {e}")
            return DependencyResponse.FAILED

        if code != 0:
            self._logger.error(f"Installing {self.module} exited with {code}")
            return DependencyResponse.FAILED
        return DependencyResponse.OK
