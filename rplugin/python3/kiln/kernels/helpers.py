"""
Helpers for kernel identity, display names, working directories and remote URIs.
"""
import hashlib
import json
import os
import sys
from typing import Optional
from urllib.parse import parse_qs, urlsplit, urlunsplit

from .types import (
    JupyterConnection,
    JupyterKernelSpec,
    KernelConnectionKind,
    KernelConnectionMetadata,
    PythonEnvironment,
)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def get_kernel_id(
    kernel_spec: JupyterKernelSpec,
    interpreter: Optional[PythonEnvironment] = None,
    base_url: Optional[str] = None,
) -> str:
    """
    Stable identity of a (spec, interpreter, server) triple.

    Only fields that change how the kernel is launched take part, so the same
    spec read twice from disk or from the server yields the same id.
    """
    identity = {
        "name": kernel_spec.name,
        "argv": list(kernel_spec.argv),
        "language": kernel_spec.language,
        "env": sorted((kernel_spec.env or {}).items()),
        "interrupt_mode": kernel_spec.interrupt_mode,
        "interpreter": os.path.normcase(interpreter.path) if interpreter else None,
        "base_url": base_url.rstrip("/") if base_url else None,
    }
    digest = hashlib.sha256(json.dumps(identity, sort_keys=True).encode("utf-8")).hexdigest()
    return f"{kernel_spec.name}.{digest[:32]}"


def create_interpreter_kernel_spec(interpreter: Optional[PythonEnvironment] = None) -> JupyterKernelSpec:
    """
    Synthesize an ipykernel spec that launches the given interpreter.

    With no interpreter, the plugin host interpreter is used.
    """
    path = interpreter.path if interpreter else sys.executable
    display_name = (interpreter.display_name if interpreter else None) or f"Python ({os.path.basename(path)})"
    return JupyterKernelSpec(
        name="python3",
        display_name=display_name,
        argv=[path, "-m", "ipykernel_launcher", "-f", "{connection_file}"],
        language="python",
        metadata={"interpreter": {"path": path}},
        interpreter_path=path,
    )


def get_display_name_of_kernel_connection(metadata: Optional[KernelConnectionMetadata]) -> str:
    if metadata is None:
        return ""
    if metadata.kind == KernelConnectionKind.CONNECT_TO_LIVE_REMOTE_KERNEL:
        model = metadata.kernel_model
        label = model.session_name or model.session_path or model.name
        return f"{label} (running {model.id[:8]})"
    if metadata.kind == KernelConnectionKind.START_USING_PYTHON_INTERPRETER and metadata.interpreter:
        return metadata.interpreter.display_name or metadata.kernel_spec.display_name
    if metadata.kernel_spec:
        return metadata.kernel_spec.display_name or metadata.kernel_spec.name
    return metadata.id


def is_local_host(host_name: Optional[str]) -> bool:
    return (host_name or "").lower() in LOCAL_HOSTS


def create_remote_connection_info(uri: str) -> JupyterConnection:
    """
    Parse a user supplied server URI such as 'http://host:8888/lab?token=abc'.

    A trailing '/lab' is not part of the server base URL and is dropped. A
    missing token is recorded as the string 'null', meaning tokenless.
    """
    parts = urlsplit(uri)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Invalid Jupyter server URI: {uri}")

    path = parts.path
    if path.rstrip("/") == "/lab":
        path = "/"
    if not path.endswith("/"):
        path += "/"

    token = parse_qs(parts.query).get("token", ["null"])[0]
    base_url = urlunsplit((parts.scheme, parts.netloc, path, "", ""))
    host_name = parts.hostname or ""

    return JupyterConnection(
        base_url=base_url,
        token=token,
        host_name=host_name,
        local_launch=False,
        display_name=host_name or base_url,
    )


def expand_working_dir(working_dir: Optional[str], launching_file: Optional[str],
                       root_folder: Optional[str] = None) -> str:
    """
    Resolve a configured working directory.

    '${fileDirname}' and '${workspaceFolder}' are substituted, as are '~' and
    environment variables. Without a configured directory the launching file's
    directory is used, then the root folder, then the process cwd.
    """
    if working_dir:
        if launching_file:
            working_dir = working_dir.replace("${fileDirname}", os.path.dirname(launching_file))
        working_dir = working_dir.replace("${workspaceFolder}", root_folder or os.getcwd())
        return os.path.expandvars(os.path.expanduser(working_dir))

    if launching_file:
        return os.path.dirname(launching_file)

    return root_folder or os.getcwd()


def compute_working_directory(resource: Optional[str], root_folder: Optional[str] = None) -> str:
    """
    Directory a kernel for resource should start in.

    A file path with an extension whose directory exists gives that directory; an
    existing directory is used as is; anything else falls back to the root folder
    or the process cwd.
    """
    if resource:
        resource = os.path.abspath(os.path.expanduser(resource))
        parent = os.path.dirname(resource)
        if os.path.isdir(parent) and "." in os.path.basename(resource):
            return parent
        if os.path.isdir(resource):
            return resource

    return root_folder or os.getcwd()


def is_kernel_connection_valid(metadata: KernelConnectionMetadata, server_uri: Optional[str]) -> bool:
    """
    Whether a remembered kernel choice can still be offered.

    Remote kernels are only valid while their server is the configured one;
    local kernels need their interpreter or spec file to still exist.
    """
    if metadata.is_remote:
        if not server_uri:
            return False
        try:
            configured = create_remote_connection_info(server_uri).base_url
        except ValueError:
            return False
        return (metadata.base_url or "").rstrip("/") == configured.rstrip("/")

    if metadata.interpreter and not os.path.exists(metadata.interpreter.path):
        return False
    spec = metadata.kernel_spec
    if spec and spec.spec_file and not os.path.exists(spec.spec_file):
        return False
    return True
