"""
Tests unitaires CLI

Analyse des arguments, codes de sortie et aiguillage vers les commandes.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pgkeeper.cli import main
from pgkeeper.ha import ExitCode, StoreUnavailable


@pytest.fixture
def config_file(fixtures_path: Path) -> str:
    return str(fixtures_path / "configs" / "keeper.yaml")


@pytest.fixture
def admin():
    commands = MagicMock()
    for name in ("init_schema", "add_node", "elect", "notify"):
        setattr(commands, name, AsyncMock(return_value=None))
    commands.remove_node = AsyncMock(return_value=True)
    commands.status = AsyncMock(return_value={"node": "node1", "nodes": []})
    with patch("pgkeeper.cli.AdminCommands", return_value=commands):
        yield commands


class TestConfiguration:
    def test_missing_file(self, tmp_path: Path, capsys) -> None:
        code = main(["-c", str(tmp_path / "absent.yaml"), "status"])

        assert code == ExitCode.CONFIG_ERROR
        assert "non trouvée" in capsys.readouterr().err

    def test_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "keeper.yaml"
        path.write_text("keeper:\n  node_name: node1\n", encoding="utf-8")

        assert main(["-c", str(path), "status"]) == ExitCode.CONFIG_ERROR

    def test_command_required(self, config_file: str) -> None:
        with pytest.raises(SystemExit):
            main(["-c", config_file])


class TestAdminCommands:
    def test_add_node(self, config_file: str, admin) -> None:
        code = main(["-c", config_file, "add-node", "node3", "host=10.0.0.13 port=5432", "--primary"])

        assert code == 0
        admin.add_node.assert_awaited_once_with("node3", "host=10.0.0.13 port=5432", True)

    def test_remove_absent_node(self, config_file: str, admin) -> None:
        admin.remove_node.return_value = False

        assert main(["-c", config_file, "remove-node", "node9"]) == 1

    def test_status_prints_json(self, config_file: str, admin, capsys) -> None:
        assert main(["-c", config_file, "status"]) == 0

        assert json.loads(capsys.readouterr().out) == {"node": "node1", "nodes": []}

    @pytest.mark.parametrize("command, method", [("init-schema", "init_schema"), ("elect", "elect"), ("notify", "notify")])
    def test_dispatch(self, config_file: str, admin, command: str, method: str) -> None:
        assert main(["-c", config_file, command]) == 0

        getattr(admin, method).assert_awaited_once()

    def test_store_error_is_fatal(self, config_file: str, admin) -> None:
        admin.elect.side_effect = StoreUnavailable("connection refused")

        assert main(["-c", config_file, "elect"]) == ExitCode.FATAL


class TestRun:
    def test_exit_code_from_coordinator(self, config_file: str) -> None:
        coordinator = MagicMock()
        coordinator.run = AsyncMock(return_value=ExitCode.FATAL)

        with patch("pgkeeper.cli.build_coordinator", return_value=coordinator) as build:
            code = main(["-c", config_file, "run"])

        assert code == 1
        assert build.call_args.kwargs["config_loader"].config_path == Path(config_file)
