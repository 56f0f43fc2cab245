import asyncio

import pytest

from chorus.dispatch import CommandDispatcher
from chorus.errors import CommandError, SessionNotFoundError
from chorus.event_bus import EventBus
from chorus.remote_manager import RemoteStatus
from chorus.session_manager import SessionManager

from conftest import FakeSpawner


class FakeRemote:
    def __init__(self):
        self.started = None
        self.stopped = False
        self.status = RemoteStatus(running=True, bot_username="chorus_bot")

    async def start(self, token, project_dir, pairing_code=None, user_id=None):
        self.started = {"token": token, "project_dir": project_dir, "pairing_code": pairing_code, "user_id": user_id}

    async def stop(self):
        self.stopped = True


def _dispatcher(remote=None):
    spawner = FakeSpawner()
    manager = SessionManager(spawner, EventBus())
    return CommandDispatcher(manager, remote), spawner


def test_unknown_command_names_the_command():
    dispatcher, _ = _dispatcher()
    with pytest.raises(CommandError, match="Command 'frobnicate' not yet supported via web access"):
        asyncio.run(dispatcher.dispatch("frobnicate", {}))


def test_remote_commands_only_exist_with_a_remote_manager():
    without, _ = _dispatcher()
    with_remote, _ = _dispatcher(FakeRemote())
    assert "start_remote_bot" not in without.commands
    assert {"start_remote_bot", "stop_remote_bot", "get_remote_status"} <= set(with_remote.commands)


def test_resize_pty_bounds(tmp_path):
    async def scenario():
        dispatcher, spawner = _dispatcher()
        await dispatcher.dispatch("spawn_session", {"cwd": str(tmp_path)})
        await dispatcher.dispatch("resize_pty", {"sessionId": 1, "rows": 500, "cols": 1})
        for rows, cols in ((0, 80), (24, 501), (True, 80), ("24", 80)):
            with pytest.raises(CommandError):
                await dispatcher.dispatch("resize_pty", {"sessionId": 1, "rows": rows, "cols": cols})
        await dispatcher.sessions.shutdown_all()
        return spawner.processes[0].size

    assert asyncio.run(scenario()) == (500, 1)


def test_session_id_accepts_either_argument_name(tmp_path):
    async def scenario():
        dispatcher, spawner = _dispatcher()
        await dispatcher.dispatch("create_session", {"cwd": str(tmp_path), "command": "claude --continue"})
        await dispatcher.dispatch("write_stdin", {"sessionId": 1, "data": "a"})
        await dispatcher.dispatch("write_stdin", {"id": "1", "data": "b"})
        with pytest.raises(CommandError, match="Missing sessionId"):
            await dispatcher.dispatch("write_stdin", {"data": "c"})
        with pytest.raises(CommandError, match="Missing data"):
            await dispatcher.dispatch("write_stdin", {"id": 1})
        with pytest.raises(SessionNotFoundError):
            await dispatcher.dispatch("get_session_output", {"id": 42})
        status = await dispatcher.dispatch("update_session_status", {"id": 1, "status": "working"})
        await dispatcher.sessions.shutdown_all()
        return spawner, status

    spawner, status = asyncio.run(scenario())
    assert spawner.calls[0]["argv"] == ["claude", "--continue"]
    assert spawner.processes[0].written == ["a", "b"]
    assert status == "working"


def test_kill_all_sessions_reports_count(tmp_path):
    async def scenario():
        dispatcher, _ = _dispatcher()
        for _ in range(3):
            await dispatcher.dispatch("create_session", {"cwd": str(tmp_path)})
        killed = await dispatcher.dispatch("kill_all_sessions")
        remaining = await dispatcher.dispatch("get_sessions")
        await dispatcher.sessions.shutdown_all()
        return killed, remaining

    assert asyncio.run(scenario()) == (3, [])


def test_start_remote_bot_generates_pairing_code():
    remote = FakeRemote()
    dispatcher, _ = _dispatcher(remote)
    result = asyncio.run(dispatcher.dispatch("start_remote_bot", {"token": "123:abc", "projectDir": "/repo"}))
    code = result["pairingCode"]
    assert len(code) == 6 and code == code.upper()
    assert int(code, 16) >= 0
    assert result["alreadyPaired"] is False
    assert remote.started == {"token": "123:abc", "project_dir": "/repo", "pairing_code": code, "user_id": None}


def test_start_remote_bot_with_known_owner_skips_pairing():
    remote = FakeRemote()
    dispatcher, _ = _dispatcher(remote)
    result = asyncio.run(dispatcher.dispatch("start_remote_bot", {"token": "t", "userId": "777"}))
    assert result == {"pairingCode": None, "alreadyPaired": True}
    assert remote.started["user_id"] == 777

    asyncio.run(dispatcher.dispatch("stop_remote_bot"))
    assert remote.stopped
    status = asyncio.run(dispatcher.dispatch("get_remote_status"))
    assert status["bot_username"] == "chorus_bot"
