import os

import pytest

import chroothelper


class FakeMac(object):
    def __init__(self, active=True):
        self.active = active

    def enabled(self):
        return self.active

    def preload(self):
        return 'LD_PRELOAD=libshim-test.so'


@pytest.fixture
def rootsdir(tmp_path):
    root = tmp_path / 'roots'
    (root / 'build1').mkdir(parents=True)
    return str(root)


@pytest.fixture
def cfg(rootsdir):
    return chroothelper.HelperConfig(rootsdir, mac=chroothelper.NoMac())


@pytest.fixture
def execs(monkeypatch, tmp_path):
    """Record execve calls instead of replacing the test process."""
    calls = []

    def fake_execve(program, args, environ):
        calls.append((program, list(args), dict(environ)))

    monkeypatch.setattr(os, 'execve', fake_execve)
    monkeypatch.setattr(os, 'setreuid', lambda ruid, euid: None)
    monkeypatch.chdir(tmp_path)
    return calls


@pytest.fixture
def run(cfg, execs):
    def run(*args):
        return chroothelper.main(['chroot-helper'] + list(args), cfg)
    return run
