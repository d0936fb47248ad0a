"""
File transfer and remote commands for a running VM.

Everything is built on two client primitives: ``run`` (a command inside the
VM) and ``copy`` (``anka cp``). When ``anka cp`` is not requested and the
guest has the shared filesystem driver, files travel through a host
directory mounted into the guest as a volume and are moved with ``cp``.
"""

import logging
import os
import shutil
import tempfile
from typing import BinaryIO, List, Optional

from .client import AnkaClient
from .exceptions import AnkaError, GuestCommandError
from .runner import RunParams

logger = logging.getLogger(__name__)

FUSE_PROBE = 'kextstat | grep "com.veertu.filesystems.vtufs" &>/dev/null'


class AnkaCommunicator:
    def __init__(self, client: AnkaClient, vm_name: str, host_dir: str, use_anka_cp: bool = False):
        self.client = client
        self.vm_name = vm_name
        self.host_dir = host_dir
        self.use_anka_cp = use_anka_cp
        self._fuse_checked = False

    def start(
        self,
        command: str,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> int:
        """Run ``command`` in the guest and return its exit code."""
        logger.info(f"Communicator start: {command}")
        return self.client.run(
            RunParams(vm_name=self.vm_name, command=[command], stdin=stdin, stdout=stdout, stderr=stderr)
        )

    def _guest_path(self, path: str) -> str:
        return f"{self.vm_name}:{path}"

    def _run_in_volume(self, command: List[str]) -> None:
        exit_code = self.client.run(RunParams(vm_name=self.vm_name, command=command, volume=self.host_dir))
        if exit_code != 0:
            raise GuestCommandError(" ".join(command), exit_code)

    def configure_anka_cp(self) -> None:
        """Fall back to ``anka cp`` when the guest has no shared filesystem driver."""
        if self.use_anka_cp or self._fuse_checked:
            return

        self._fuse_checked = True
        exit_code = self.client.run(RunParams(vm_name=self.vm_name, command=[FUSE_PROBE]))
        if exit_code != 0:
            logger.info(f"Shared filesystem driver not found in {self.vm_name}, using anka cp")
            self.use_anka_cp = True

    def upload(self, dst: str, src: BinaryIO, mode: Optional[int] = None) -> None:
        logger.info(f"Uploading file to VM: {dst}")
        self.configure_anka_cp()

        fd, tmp_path = tempfile.mkstemp(prefix="upload", dir=self.host_dir)
        try:
            with os.fdopen(fd, "wb") as tmp:
                shutil.copyfileobj(src, tmp)
            if mode is not None:
                os.chmod(tmp_path, mode)

            if self.use_anka_cp:
                self.client.copy(tmp_path, self._guest_path(dst))
            else:
                self._run_in_volume(["cp", os.path.basename(tmp_path), dst])

            logger.debug(f"Copied {tmp_path} to {dst}")
        finally:
            os.remove(tmp_path)

    def upload_dir(self, dst: str, src: str, exclude: Optional[List[str]] = None) -> None:
        """
        Upload a directory tree.

        Like ``cp -R``, a ``src`` without a trailing slash is placed inside
        ``dst``; with a trailing slash only its contents are copied.
        """
        self.configure_anka_cp()

        if self.use_anka_cp:
            self.client.copy(src, self._guest_path(dst))
            return

        staging = tempfile.mkdtemp(prefix="dirupload", dir=self.host_dir)
        try:
            ignore = shutil.ignore_patterns(*exclude) if exclude else None
            shutil.copytree(src, staging, symlinks=True, ignore=ignore, dirs_exist_ok=True)

            guest_dst = dst
            if not src.endswith("/"):
                guest_dst = os.path.join(dst, os.path.basename(src))

            logger.debug(f"from {staging} to {guest_dst}")
            command = f"set -e; mkdir -p {guest_dst}; command cp -R {os.path.basename(staging)}/* {guest_dst}"
            self._run_in_volume(["bash", "-c", command])
        finally:
            shutil.rmtree(staging)

    def download(self, src: str, dst: BinaryIO) -> None:
        logger.info(f"Downloading file from VM: {src}")
        self.configure_anka_cp()

        fd, tmp_path = tempfile.mkstemp(prefix="download", dir=self.host_dir)
        os.close(fd)
        try:
            if self.use_anka_cp:
                self.client.copy(self._guest_path(src), tmp_path)
            else:
                self._run_in_volume(["cp", src, f"./{os.path.basename(tmp_path)}"])

            with open(tmp_path, "rb") as tmp:
                shutil.copyfileobj(tmp, dst)
        finally:
            os.remove(tmp_path)

    def download_dir(self, src: str, dst: str, exclude: Optional[List[str]] = None) -> None:
        self.configure_anka_cp()

        if not self.use_anka_cp:
            raise AnkaError("download_dir is only supported with anka cp")

        self.client.copy(self._guest_path(src), dst)
