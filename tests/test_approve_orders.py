from __future__ import annotations
import io
import json
import os
import signal

import pytest

from sortavo.approve_orders import amain, main, parse_args
from sortavo.mockrest import MockRest
from sortavo.rest import BackendError
from sortavo.settings import ConfigError


def env_for(tmp_path, **extra):
    env = {
        "SUPABASE_URL": "http://mock.local",
        "SUPABASE_SERVICE_ROLE_KEY": "cli-key",
        "CHECKPOINT_PATH": str(tmp_path / "cp.json"),
    }
    env.update(extra)
    return env


@pytest.mark.asyncio
async def test_run_against_backend_writes_checkpoint(tmp_path):
    mock = MockRest(service_key="cli-key")
    mock.seed(1200)
    out = io.StringIO()

    rc = await amain(
        parse_args(["--batch-size", "500"]),
        environ=env_for(tmp_path),
        transport=mock.transport(),
        out=out, err=io.StringIO(),
    )

    assert rc == 0
    assert mock.pending_ids() == []
    text = out.getvalue()
    assert "Approved: 1200" in text
    assert "Remaining pending orders: 0" in text
    cp = json.loads((tmp_path / "cp.json").read_text())
    assert cp["approved"] == 1200
    assert cp["finished"] is True


@pytest.mark.asyncio
async def test_batch_size_from_environment(tmp_path):
    mock = MockRest(service_key="cli-key")
    mock.seed(10)

    await amain(parse_args([]), environ=env_for(tmp_path, BATCH_SIZE="4"),
                transport=mock.transport(), out=io.StringIO(),
                err=io.StringIO())

    assert [len(c.ids) for c in mock.calls_of("PATCH")] == [4, 4, 2]


@pytest.mark.asyncio
async def test_count_only(tmp_path):
    mock = MockRest(service_key="cli-key")
    mock.seed(7)
    out = io.StringIO()

    rc = await amain(parse_args(["--count-only"]), environ=env_for(tmp_path),
                     transport=mock.transport(), out=out)

    assert rc == 0
    assert "Pending orders: 7" in out.getvalue()
    assert mock.calls_of("PATCH") == []
    assert not (tmp_path / "cp.json").exists()


@pytest.mark.asyncio
async def test_initial_count_error_escapes(tmp_path):
    mock = MockRest(service_key="other-key")
    mock.seed(3)

    with pytest.raises(BackendError):
        await amain(parse_args([]), environ=env_for(tmp_path),
                    transport=mock.transport(), out=io.StringIO())


@pytest.mark.asyncio
async def test_bad_flags_are_config_errors(tmp_path):
    for argv in (["--batch-size", "0"], ["--max-retries", "-1"],
                 ["--max-orders", "0"]):
        with pytest.raises(ConfigError):
            await amain(parse_args(argv), environ=env_for(tmp_path))


def test_main_without_credentials_exits_1(monkeypatch, capsys):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)

    assert main([]) == 1
    assert "missing required config" in capsys.readouterr().err


def test_main_mock_mode(capsys):
    assert main(["--mock", "120", "--batch-size", "50"]) == 0

    out = capsys.readouterr().out
    assert "Pending orders: 120" in out
    assert "Approved: 120" in out
    assert "Batches: 3" in out


def test_main_mock_mode_with_nothing_pending(capsys):
    assert main(["--mock", "0"]) == 0
    assert "No orders pending approval" in capsys.readouterr().out


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
@pytest.mark.asyncio
async def test_sigint_stops_between_batches_and_exits_130(tmp_path):
    mock = MockRest(service_key="cli-key")
    mock.seed(100)
    sent = []

    def interrupt_once(_m, _ids):
        if not sent:
            sent.append(True)
            os.kill(os.getpid(), signal.SIGINT)
    mock.after_patch = interrupt_once
    out = io.StringIO()

    rc = await amain(parse_args(["--batch-size", "5"]),
                     environ=env_for(tmp_path),
                     transport=mock.transport(), out=out, err=io.StringIO())

    assert rc == 130
    text = out.getvalue()
    assert "SUMMARY" in text
    assert "Run was stopped" in text
    assert mock.pending_ids() != []
    cp = json.loads((tmp_path / "cp.json").read_text())
    assert cp["finished"] is False
