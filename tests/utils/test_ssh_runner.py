import types

import pytest

from hashiprov.config.models import TargetHost
from hashiprov.errors import CommandError
from hashiprov.utils import ssh as ssh_mod
from hashiprov.utils.runner import LocalRunner
from hashiprov.utils.ssh_runner import SSHRunner

# ----------------- Fakes for Paramiko -----------------

class _FakeChannel:
    eof_received = True
    closed = False

    def __init__(self, out="", err="", rc=0, log=None):
        self._out = out.encode()
        self._err = err.encode()
        self._rc = rc
        self.log = log
        self.reads = []
    def recv_ready(self): return bool(self._out)
    def recv_stderr_ready(self): return bool(self._err)
    def recv(self, n):
        chunk, self._out = self._out[:n], self._out[n:]
        self.reads.append(("out", len(chunk)))
        return chunk
    def recv_stderr(self, n):
        chunk, self._err = self._err[:n], self._err[n:]
        self.reads.append(("err", len(chunk)))
        return chunk
    def exit_status_ready(self): return not (self._out or self._err)
    def recv_exit_status(self): return self._rc
    def shutdown_write(self): self.log.append(("stdin_eof",))

class _Stream:
    def __init__(self, channel, stderr=False):
        self.channel = channel
        self._stderr = stderr
    def read(self):
        if self._stderr:
            return self.channel.recv_stderr(1 << 30) if self.channel.recv_stderr_ready() else b""
        return self.channel.recv(1 << 30) if self.channel.recv_ready() else b""

class _FakeFile:
    def __init__(self, log, path):
        self._buf = []
        self.log = log
        self.path = path
    def __enter__(self): return self
    def __exit__(self, *exc): self.close()
    def write(self, data): self._buf.append(data)
    def close(self): self.log.append(("sftp_write", self.path, "".join(self._buf)))

class FakeSFTP:
    def __init__(self, log): self.log = log
    def file(self, path, mode): return _FakeFile(self.log, path)
    def put(self, local, remote): self.log.append(("sftp_put", local, remote))
    def close(self): self.log.append(("sftp_close",))

class FakeSSHClient:
    def __init__(self, log=None, responses=None):
        self.log = log if log is not None else []
        self._responses = responses or {}
    def load_system_host_keys(self): pass
    def set_missing_host_key_policy(self, policy): pass
    def connect(self, **kw): self.log.append(("connect", kw))
    def open_sftp(self): return FakeSFTP(self.log)
    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd))
        out, err, rc = self._responses.get(cmd, ("", "", 0))
        ch = _FakeChannel(out, err, rc, self.log)
        self.channel = ch
        stdin = types.SimpleNamespace(
            write=lambda data: self.log.append(("stdin", data)),
            flush=lambda: None,
            channel=ch,
        )
        return stdin, _Stream(ch), _Stream(ch, stderr=True)
    def close(self): self.log.append(("close",))

    def execs(self):
        return [e[1] for e in self.log if e[0] == "exec"]

# ----------------- Tests -----------------

def test_run_quotes_every_argument():
    client = FakeSSHClient()
    SSHRunner(client).run(["openssl", "req", "-subj", "/CN=My CA; rm -rf /"])
    assert client.execs() == ["openssl req -subj '/CN=My CA; rm -rf /'"]


def test_sudo_prefix_and_stdin():
    client = FakeSSHClient()
    result = SSHRunner(client, sudo=True).run(["tee", "/etc/x"], input="data")
    assert result.ok
    assert client.execs() == ["sudo -n tee /etc/x"]
    assert ("stdin", "data") in client.log
    assert ("stdin_eof",) in client.log


def test_check_raises_with_exit_code_and_stderr():
    client = FakeSSHClient(responses={"systemctl start vault": ("", "unit not found", 5)})
    with pytest.raises(CommandError) as ei:
        SSHRunner(client).check(["systemctl", "start", "vault"])
    assert ei.value.returncode == 5
    assert "unit not found" in str(ei.value)


def test_write_text_stages_then_moves():
    client = FakeSSHClient()
    SSHRunner(client, sudo=True).write_text("/etc/consul.d/consul.hcl", "x = 1\n", mode=0o640)

    [write] = [e for e in client.log if e[0] == "sftp_write"]
    tmp = write[1]
    assert tmp.startswith("/tmp/.hashiprov_tmp_")
    assert write[2] == "x = 1\n"
    assert client.execs() == [
        f"sudo -n install -m 0640 {tmp} /etc/consul.d/consul.hcl.hashiprov-new",
        "sudo -n mv -f /etc/consul.d/consul.hcl.hashiprov-new /etc/consul.d/consul.hcl",
        f"sudo -n rm -f {tmp}",
    ]


def test_read_text_missing_file_is_none():
    client = FakeSSHClient(responses={"test -e /nope": ("", "", 1)})
    assert SSHRunner(client).read_text("/nope") is None


def test_makedirs_skips_existing_dir():
    client = FakeSSHClient()
    SSHRunner(client).makedirs("/etc/ssl/hashicorp")
    assert client.execs() == ["test -d /etc/ssl/hashicorp"]


def test_recursive_chmod_uses_find():
    client = FakeSSHClient()
    SSHRunner(client).chmod("/etc/ssl/hashicorp", dir_mode=0o770, file_mode=0o660, recursive=True)
    assert client.execs() == [
        "find /etc/ssl/hashicorp -type d -exec chmod 0770 '{}' +",
        "find /etc/ssl/hashicorp -type f -exec chmod 0660 '{}' +",
    ]


def test_open_runner_connects_over_ssh(monkeypatch):
    log = []
    monkeypatch.setattr(ssh_mod.paramiko, "SSHClient", lambda: FakeSSHClient(log))
    host = TargetHost(mode="ssh", address="10.0.0.5", username="ubuntu", password="pw", sudo=True)
    runner = ssh_mod.open_runner(host, command_timeout=30)

    assert isinstance(runner, SSHRunner)
    assert runner.sudo is True
    assert runner.label == "10.0.0.5"
    connect = next(kw for kind, kw in (e for e in log if e[0] == "connect"))
    assert connect["hostname"] == "10.0.0.5"
    assert connect["password"] == "pw"


def test_open_runner_local_mode():
    assert isinstance(ssh_mod.open_runner(TargetHost()), LocalRunner)


def test_unreadable_private_key_is_reported(tmp_path, monkeypatch):
    monkeypatch.setattr(ssh_mod.paramiko, "SSHClient", lambda: FakeSSHClient())
    key = tmp_path / "id_bad"
    key.write_text("not a key\n")
    host = TargetHost(mode="ssh", address="10.0.0.5", pkey_path=str(key))
    with pytest.raises(ssh_mod.paramiko.SSHException, match="id_bad"):
        ssh_mod.open_ssh(host)


def test_run_drains_stdout_and_stderr_together():
    noisy_out, noisy_err = "o" * 50_000, "e" * 100_000
    client = FakeSSHClient(responses={"vault operator diagnose": (noisy_out, noisy_err, 0)})
    result = SSHRunner(client).run(["vault", "operator", "diagnose"])

    assert result.stdout == noisy_out
    assert result.stderr == noisy_err
    kinds = [kind for kind, _ in client.channel.reads]
    # stderr is read before stdout reaches EOF
    assert kinds.index("err") < len(kinds) - 1 - kinds[::-1].index("out")
