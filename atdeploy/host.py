"""
Host access: running commands and writing files on the machine being provisioned.

All side effects of a run go through a Host, so components never touch
ambient process state directly and tests can swap the Runner for a fake.
"""

import contextlib
import getpass
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a single host command."""
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Runner:
    """Runs host commands through subprocess."""

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        capture: bool = True,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """
        Run a command and return its result.

        Args:
            argv: Command and arguments
            check: Raise CommandError on non-zero exit
            input: Text fed to stdin
            env: Extra environment variables
            capture: Capture output; when False output goes to the terminal
            cwd: Working directory

        Returns:
            CommandResult

        Raises:
            CommandError: If the command is missing or exits non-zero and check is set
        """
        logger.debug(f"Running: {' '.join(argv)}")
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        pipe = subprocess.PIPE if capture else None
        try:
            process = subprocess.run(
                list(argv),
                input=input,
                env=full_env,
                cwd=cwd,
                stdout=pipe,
                stderr=pipe,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommandError(argv, 127, str(e)) from e

        result = CommandResult(list(argv), process.returncode, process.stdout or "", process.stderr or "")
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stdout + result.stderr)
        return result

    def which(self, name: str) -> bool:
        return shutil.which(name) is not None


def atomic_write(path: Path, content: str, mode: int = 0o644) -> None:
    """
    Write a file so readers only ever see the old or the new content.

    The temporary file is created in the target directory with its final mode
    already applied, then renamed over the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


class Host:
    """
    The single host being provisioned.

    Privileged operations are prefixed with sudo unless the process already
    runs as root or sudo is disabled (tests run everything unprivileged under
    a temporary layout).
    """

    def __init__(
        self,
        runner: Optional[Runner] = None,
        use_sudo: Optional[bool] = None,
        user: Optional[str] = None,
        home: Optional[Path] = None,
        is_root: Optional[bool] = None,
    ):
        self.runner = runner or Runner()
        self.is_root = (os.geteuid() == 0) if is_root is None else is_root
        self.use_sudo = (not self.is_root) if use_sudo is None else use_sudo
        self.user = user or getpass.getuser()
        self.home = home or Path.home()

    def run(
        self,
        argv: Sequence[str],
        *,
        sudo: bool = False,
        as_user: Optional[str] = None,
        **kwargs,
    ) -> CommandResult:
        argv = list(argv)
        if as_user:
            argv = ["sudo", "-u", as_user, *argv]
        elif sudo and self.use_sudo:
            argv = ["sudo", *argv]
        return self.runner.run(argv, **kwargs)

    def command_exists(self, name: str) -> bool:
        return self.runner.which(name)

    def read_file(self, path: Path) -> Optional[str]:
        path = Path(path)
        if not path.exists():
            return None
        return path.read_text()

    def write_file(self, path: Path, content: str, mode: int = 0o644, privileged: bool = False) -> None:
        path = Path(path)
        if privileged and self.use_sudo:
            self._write_privileged(path, content, mode)
        else:
            atomic_write(path, content, mode)
        logger.debug(f"Wrote {path}")

    def _write_privileged(self, path: Path, content: str, mode: int) -> None:
        # Stage in a private temp file, install next to the target, then rename.
        fd, staged = tempfile.mkstemp(prefix="atdeploy-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            sibling = path.with_name(f".{path.name}.atdeploy-tmp")
            self.run(["install", "-D", "-m", f"{mode:o}", staged, str(sibling)], sudo=True)
            self.run(["mv", "-f", str(sibling), str(path)], sudo=True)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(staged)

    def remove_file(self, path: Path, privileged: bool = False) -> bool:
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return False
        if privileged and self.use_sudo:
            self.run(["rm", "-f", str(path)], sudo=True)
        else:
            path.unlink()
        return True

    def make_dirs(self, paths: Iterable[Path], privileged: bool = False, owner: Optional[str] = None) -> None:
        paths = [Path(p) for p in paths]
        if privileged and self.use_sudo:
            self.run(["mkdir", "-p", *[str(p) for p in paths]], sudo=True)
            if owner:
                self.run(["chown", "-R", f"{owner}:{owner}", *[str(p) for p in paths]], sudo=True)
        else:
            for p in paths:
                p.mkdir(parents=True, exist_ok=True)

    def symlink(self, target: Path, link: Path, privileged: bool = False) -> None:
        target, link = Path(target), Path(link)
        if privileged and self.use_sudo:
            self.run(["ln", "-sfn", str(target), str(link)], sudo=True)
            return
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink() or link.exists():
            if link.is_symlink() and os.readlink(link) == str(target):
                return
            link.unlink()
        link.symlink_to(target)
