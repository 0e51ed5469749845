"""
Interpreter discovery: which Python executable a kernel runs on and its environment.
"""
import asyncio
import json
import logging
import os
import sys
from typing import Dict, Optional

from .types import EnvironmentType, PythonEnvironment

_INFO_SCRIPT = (
    "import json, sys; "
    "print(json.dumps({'version': '%d.%d.%d' % sys.version_info[:3], "
    "'sys_prefix': sys.prefix, 'base_prefix': getattr(sys, 'base_prefix', sys.prefix)}))"
)


class InterpreterService:
    """
    Answers "which interpreter, with which environment variables" for a resource.

    Details are obtained by running the interpreter once and cached per path.
    """

    def __init__(self, python_path: Optional[str] = None, timeout: float = 10.0):
        self.python_path = python_path
        self.timeout = timeout
        self._cache: Dict[str, PythonEnvironment] = {}
        self._logger = logging.getLogger("kiln.interpreters")

    async def get_active_interpreter(self, resource: Optional[str] = None) -> Optional[PythonEnvironment]:
        path = self.python_path or sys.executable
        return await self.get_interpreter_details(path)

    async def get_interpreter_details(self, path: str) -> Optional[PythonEnvironment]:
        """
        Run path and describe the environment it belongs to.

        Returns None when the interpreter cannot be run; never raises.
        """
        path = os.path.expanduser(path)
        if path in self._cache:
            return self._cache[path]

        try:
            proc = await asyncio.create_subprocess_exec(
                path, "-c", _INFO_SCRIPT,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                proc.kill()
                self._logger.warning(f"Timed out reading interpreter details for {path}")
                return None
            if proc.returncode != 0:
                self._logger.warning(f"Interpreter {path} exited with {proc.returncode}: {stderr.decode(errors='replace')}")
                return None
            info = json.loads(stdout.decode().strip().splitlines()[-1])
        except (OSError, ValueError, IndexError) as e:
            self._logger.warning(f"Failed to get interpreter details for {path}: {e}")
            return None

        environment = self._describe(path, info)
        self._cache[path] = environment
        return environment

    def _describe(self, path: str, info: Dict[str, str]) -> PythonEnvironment:
        sys_prefix = info.get("sys_prefix") or ""
        base_prefix = info.get("base_prefix") or sys_prefix
        version = info.get("version")

        if sys_prefix and os.path.exists(os.path.join(sys_prefix, "conda-meta")):
            env_type = EnvironmentType.CONDA
        elif sys_prefix != base_prefix:
            env_type = EnvironmentType.VENV
        elif ".pyenv" in path:
            env_type = EnvironmentType.PYENV
        else:
            env_type = EnvironmentType.GLOBAL

        env_name = os.path.basename(sys_prefix.rstrip(os.sep)) if env_type != EnvironmentType.GLOBAL else None
        display_name = f"Python {version}" + (f" ('{env_name}')" if env_name else "")

        return PythonEnvironment(
            path=path,
            version=version,
            display_name=display_name,
            env_type=env_type,
            env_name=env_name,
            env_path=sys_prefix if env_type != EnvironmentType.GLOBAL else None,
            sys_prefix=sys_prefix,
        )

    def get_environment_variables(self, interpreter: Optional[PythonEnvironment]) -> Dict[str, str]:
        """
        Variables to add to the kernel process environment so that the
        interpreter's environment is activated.
        """
        if interpreter is None:
            return {}

        env: Dict[str, str] = {}
        bin_dir = os.path.dirname(interpreter.path)
        if interpreter.env_type in (EnvironmentType.VENV, EnvironmentType.CONDA):
            env["PATH"] = bin_dir + os.pathsep + os.environ.get("PATH", "")
        if interpreter.env_type == EnvironmentType.VENV and interpreter.env_path:
            env["VIRTUAL_ENV"] = interpreter.env_path
        if interpreter.env_type == EnvironmentType.CONDA and interpreter.env_path:
            env["CONDA_PREFIX"] = interpreter.env_path
            if interpreter.env_name:
                env["CONDA_DEFAULT_ENV"] = interpreter.env_name
        return env
