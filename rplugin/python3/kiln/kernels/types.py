"""
Data types shared by kernel discovery, sessions and the lifecycle controller.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


class KernelConnectionKind(str, enum.Enum):
    START_USING_LOCAL_KERNEL_SPEC = "startUsingLocalKernelSpec"
    START_USING_PYTHON_INTERPRETER = "startUsingPythonInterpreter"
    START_USING_REMOTE_KERNEL_SPEC = "startUsingRemoteKernelSpec"
    CONNECT_TO_LIVE_REMOTE_KERNEL = "connectToLiveRemoteKernel"

    @property
    def is_remote(self) -> bool:
        return self in (
            KernelConnectionKind.START_USING_REMOTE_KERNEL_SPEC,
            KernelConnectionKind.CONNECT_TO_LIVE_REMOTE_KERNEL,
        )


class EnvironmentType(str, enum.Enum):
    UNKNOWN = "Unknown"
    GLOBAL = "Global"
    VENV = "Venv"
    CONDA = "Conda"
    PYENV = "Pyenv"


class KernelStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    RESTARTING = "restarting"
    AUTORESTARTING = "autorestarting"
    DEAD = "dead"
    DISPOSED = "disposed"

    @classmethod
    def from_execution_state(cls, state: Optional[str]) -> "KernelStatus":
        """Map an IOPub 'execution_state' value to a status."""
        try:
            return cls(state)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class PythonEnvironment:
    """What interpreter discovery knows about one Python executable."""

    path: str
    version: Optional[str] = None
    display_name: Optional[str] = None
    env_type: EnvironmentType = EnvironmentType.UNKNOWN
    env_name: Optional[str] = None
    env_path: Optional[str] = None
    sys_prefix: Optional[str] = None


@dataclass
class JupyterKernelSpec:
    """
    A kernel spec as found on disk (kernel.json) or returned by /api/kernelspecs.
    """

    name: str
    display_name: str
    argv: List[str] = field(default_factory=list)
    language: str = "python"
    env: Dict[str, str] = field(default_factory=dict)
    interrupt_mode: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    spec_file: Optional[str] = None
    interpreter_path: Optional[str] = None
    resource_dir: Optional[str] = None

    @classmethod
    def from_model(cls, model: Dict[str, Any], spec_file: Optional[str] = None) -> "JupyterKernelSpec":
        """
        Build a spec from either a REST entry ({'name': ..., 'spec': {...}}) or a
        bare kernel.json dictionary.
        """
        spec = model.get("spec", model)
        name = model.get("name") or spec.get("name") or ""
        metadata = spec.get("metadata") or {}
        interpreter_path = None
        if isinstance(metadata.get("interpreter"), dict):
            interpreter_path = metadata["interpreter"].get("path")
        return cls(
            name=name,
            display_name=spec.get("display_name") or name,
            argv=list(spec.get("argv") or []),
            language=spec.get("language") or "",
            env=dict(spec.get("env") or {}),
            interrupt_mode=spec.get("interrupt_mode"),
            metadata=metadata,
            spec_file=spec_file,
            interpreter_path=interpreter_path,
            resource_dir=model.get("resource_dir"),
        )


@dataclass
class LiveKernelModel:
    """A kernel already running on a remote server."""

    id: str
    name: str
    last_activity_time: Optional[str] = None
    number_of_connections: int = 0
    execution_state: Optional[str] = None
    session_id: Optional[str] = None
    session_name: Optional[str] = None
    session_path: Optional[str] = None
    session_type: Optional[str] = None

    @classmethod
    def from_models(cls, kernel: Dict[str, Any], session: Optional[Dict[str, Any]] = None) -> "LiveKernelModel":
        session = session or {}
        return cls(
            id=kernel["id"],
            name=kernel.get("name", ""),
            last_activity_time=kernel.get("last_activity"),
            number_of_connections=int(kernel.get("connections") or 0),
            execution_state=kernel.get("execution_state"),
            session_id=session.get("id"),
            session_name=session.get("name"),
            session_path=session.get("path"),
            session_type=session.get("type"),
        )


@dataclass(frozen=True)
class KernelConnectionMetadata:
    """
    How to reach a kernel. Build instances with the classmethods below; they
    compute the stable id from the kernel spec, interpreter and server.
    """

    kind: KernelConnectionKind
    id: str
    kernel_spec: Optional[JupyterKernelSpec] = field(default=None, compare=False)
    interpreter: Optional[PythonEnvironment] = field(default=None, compare=False)
    base_url: Optional[str] = None
    kernel_model: Optional[LiveKernelModel] = field(default=None, compare=False)

    @classmethod
    def local_kernel_spec(cls, kernel_spec: JupyterKernelSpec,
                          interpreter: Optional[PythonEnvironment] = None) -> "KernelConnectionMetadata":
        from .helpers import get_kernel_id

        return cls(
            kind=KernelConnectionKind.START_USING_LOCAL_KERNEL_SPEC,
            id=get_kernel_id(kernel_spec, interpreter),
            kernel_spec=kernel_spec,
            interpreter=interpreter,
        )

    @classmethod
    def python_interpreter(cls, kernel_spec: JupyterKernelSpec,
                           interpreter: PythonEnvironment) -> "KernelConnectionMetadata":
        from .helpers import get_kernel_id

        return cls(
            kind=KernelConnectionKind.START_USING_PYTHON_INTERPRETER,
            id=get_kernel_id(kernel_spec, interpreter),
            kernel_spec=kernel_spec,
            interpreter=interpreter,
        )

    @classmethod
    def remote_kernel_spec(cls, kernel_spec: JupyterKernelSpec, base_url: str,
                           interpreter: Optional[PythonEnvironment] = None) -> "KernelConnectionMetadata":
        from .helpers import get_kernel_id

        return cls(
            kind=KernelConnectionKind.START_USING_REMOTE_KERNEL_SPEC,
            id=get_kernel_id(kernel_spec, interpreter, base_url),
            kernel_spec=kernel_spec,
            interpreter=interpreter,
            base_url=base_url,
        )

    @classmethod
    def live_remote_kernel(cls, kernel_model: LiveKernelModel, base_url: str,
                           interpreter: Optional[PythonEnvironment] = None) -> "KernelConnectionMetadata":
        return cls(
            kind=KernelConnectionKind.CONNECT_TO_LIVE_REMOTE_KERNEL,
            id=kernel_model.id,
            interpreter=interpreter,
            base_url=base_url,
            kernel_model=kernel_model,
        )

    @property
    def is_remote(self) -> bool:
        return self.kind.is_remote


@dataclass
class JupyterConnection:
    """Negotiation input for one Jupyter server."""

    base_url: str
    token: Optional[str] = None
    host_name: str = ""
    local_launch: bool = False
    display_name: str = ""
    root_directory: Optional[str] = None
    get_auth_header: Optional[Callable[[], Dict[str, str]]] = None
    on_dispose: Optional[Callable[[], None]] = None
    _disposed: bool = field(default=False, init=False, repr=False)

    @property
    def url(self) -> str:
        if self.has_token:
            return f"{self.base_url}?token={self.token}"
        return self.base_url

    @property
    def has_token(self) -> bool:
        return bool(self.token) and self.token != "null"

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self.on_dispose:
            self.on_dispose()


@dataclass
class DisplayOptions:
    """How much UI a background operation may show."""

    disable_ui: bool = False


@dataclass(frozen=True)
class ServerOptions:
    """Inputs that identify one Jupyter server; equal options share one server."""

    uri: Optional[str]
    skip_using_default_config: bool = False
    local_jupyter: bool = False
    working_dir: Optional[str] = None
    # Certificate verification is fixed when a server is created
    allow_unauthorized: bool = False


@dataclass
class KernelOptions:
    metadata: KernelConnectionMetadata
    resource: Optional[str] = None
    display: DisplayOptions = field(default_factory=DisplayOptions)
