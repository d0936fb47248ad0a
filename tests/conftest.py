"""Shared test fixtures for ankabuild tests."""

import random
import stat
from typing import List
from unittest import mock

import pytest

from ankabuild.client import AnkaClient
from ankabuild.config import BuildConfig
from ankabuild.models import DescribeResponse, ShowResponse, VMStatus
from ankabuild.state import BuildState
from ankabuild.ui import Ui
from ankabuild.util import AnkaUtil


class RecordingUi(Ui):
    """Ui that keeps every message for assertions."""

    def __init__(self):
        self.says: List[str] = []
        self.messages: List[str] = []
        self.errors: List[str] = []

    def say(self, message: str) -> None:
        self.says.append(message)

    def message(self, message: str) -> None:
        self.messages.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


@pytest.fixture
def ui():
    return RecordingUi()


@pytest.fixture
def client():
    """AnkaClient mock that enforces the real method signatures."""
    return mock.create_autospec(AnkaClient, instance=True)


@pytest.fixture
def util():
    """AnkaUtil with a seeded random source."""
    return AnkaUtil(random.Random(1234))


@pytest.fixture
def make_state(ui, client, util):
    """Factory for BuildState objects wired to the shared mocks."""

    def _make(config=None, **kwargs):
        return BuildState(config=config or BuildConfig(), ui=ui, client=client, util=util, **kwargs)

    return _make


@pytest.fixture
def make_show():
    """Factory for ShowResponse snapshots; defaults to a stopped 80G/8G/4 core VM."""

    def _make(name="foo", status=VMStatus.STOPPED, hard_drive=80 * 1024**3, ram="8G", cpu_cores=4, uuid=None):
        return ShowResponse(
            uuid=uuid or f"{name}-uuid",
            name=name,
            cpu_cores=cpu_cores,
            ram=ram,
            status=status,
            hard_drive=hard_drive,
        )

    return _make


@pytest.fixture
def make_describe():
    """Factory for DescribeResponse objects built from raw anka bodies."""

    def _make(name="foo", body=None):
        data = {"uuid": f"{name}-uuid", "name": name}
        data.update(body or {})
        return DescribeResponse.from_body(data)

    return _make


@pytest.fixture
def fake_anka(tmp_path):
    """
    Write an executable shell script standing in for the anka binary.

    Returns a factory taking the script body; the script's arguments are
    appended to ``args.log`` next to it.
    """

    def _make(body: str) -> str:
        script = tmp_path / "anka"
        script.write_text(f'#!/bin/sh\necho "$@" >> "{tmp_path}/args.log"\n{body}\n')
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return _make
