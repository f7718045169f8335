import platform
import shlex
import subprocess


def subprocess_kwargs() -> dict:
    """
    Returns a dictionary of keyword arguments for subprocess calls, adding platform-specific
    flags that we want to use consistently.
    """
    kwargs = {}
    if platform.system() == "Windows":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW  # type: ignore
    else:
        # own process group, so a Ctrl-C in the caller's terminal does not hit the server
        kwargs["start_new_session"] = True
    return kwargs


def format_command(argv: list[str]) -> str:
    """Render an argument vector for log messages only; never executed."""
    return shlex.join(argv)
