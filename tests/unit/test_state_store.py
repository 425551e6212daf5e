"""Unit tests for InstallationStateStore."""

import json

import pytest

from wizard.models.errors import StateNotFoundError
from wizard.models.state import InstallationState, ProfileSelection
from wizard.models.status import PhaseEnum
from wizard.services.state_manager import InstallationStateStore


@pytest.mark.unit
class TestInstallationStateStore:
    """Test the state document on disk."""

    @pytest.fixture
    def store(self, state_file):
        return InstallationStateStore(state_file)

    def test_read_missing_file_returns_none(self, store):
        assert store.read_state() is None

    def test_write_then_read(self, store):
        """A written state reads back equal."""
        # Arrange
        state = InstallationState(
            phase=PhaseEnum.COMPLETE,
            profiles=ProfileSelection.from_profiles(["core", "kasia-app"]),
            configuration={"network": "mainnet"},
        )

        # Act
        store.write_state(state)
        loaded = store.read_state()

        # Assert
        assert loaded == state

    def test_document_uses_camel_case_keys(self, store, state_file):
        store.write_state(InstallationState(wizard_running=True))

        with open(state_file, "r", encoding="utf-8") as f:
            document = json.load(f)

        assert document["wizardRunning"] is True
        assert "lastModified" in document
        assert "installedAt" in document
        assert "wizard_running" not in document

    def test_write_leaves_no_temp_file(self, store, state_file):
        store.write_state(InstallationState())

        assert state_file.exists()
        assert not state_file.with_name(f"{state_file.name}.tmp").exists()

    def test_corrupt_file_reads_as_none(self, store, state_file):
        """Unparseable JSON is reported as absent and the file is left alone."""
        # Arrange
        state_file.parent.mkdir(parents=True)
        state_file.write_text("{not json")

        # Act
        result = store.read_state()

        # Assert
        assert result is None
        assert state_file.read_text() == "{not json"

    def test_invalid_schema_reads_as_none(self, store, state_file):
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({"phase": "exploding"}))

        assert store.read_state() is None

    def test_update_merges_and_stamps_last_modified(self, store):
        # Arrange
        original = InstallationState(configuration={"network": "mainnet"})
        store.write_state(original)

        # Act
        updated = store.update_state({"phase": PhaseEnum.INSTALLING, "wizard_running": True})

        # Assert
        assert updated.phase == PhaseEnum.INSTALLING
        assert updated.wizard_running is True
        assert updated.configuration == {"network": "mainnet"}
        assert updated.last_modified >= original.last_modified
        assert store.read_state() == updated

    def test_update_accepts_document_keys(self, store):
        store.write_state(InstallationState())

        updated = store.update_state({"wizardRunning": True})

        assert updated.wizard_running is True

    def test_update_without_state_raises(self, store):
        with pytest.raises(StateNotFoundError):
            store.update_state({"phase": PhaseEnum.ERROR})

    def test_delete_state(self, store, state_file):
        store.write_state(InstallationState())

        store.delete_state()
        store.delete_state()

        assert not state_file.exists()

    def test_update_keeps_unknown_keys(self, store, state_file):
        """其他工具写入的字段在读改写后仍然保留。"""
        # Arrange
        store.write_state(InstallationState())
        document = json.loads(state_file.read_text())
        document["dashboard"] = {"theme": "dark"}
        state_file.write_text(json.dumps(document))

        # Act
        store.update_state({"a": 1})
        store.update_state({"phase": PhaseEnum.COMPLETE})

        # Assert
        on_disk = json.loads(state_file.read_text())
        assert on_disk["a"] == 1
        assert on_disk["dashboard"] == {"theme": "dark"}
        assert on_disk["phase"] == "complete"

    def test_has_installation(self, store):
        assert store.has_installation() is False

        store.write_state(InstallationState())
        assert store.has_installation() is True

        store.delete_state()
        assert store.has_installation() is False

    def test_on_change_called_after_write(self, state_file):
        seen = []
        store = InstallationStateStore(state_file, on_change=seen.append)

        store.write_state(InstallationState())
        store.update_state({"wizardRunning": True})

        assert [s.wizard_running for s in seen] == [False, True]

    def test_on_change_not_called_when_write_fails(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        seen = []
        store = InstallationStateStore(blocker / "installation-state.json", on_change=seen.append)

        with pytest.raises(OSError):
            store.write_state(InstallationState())

        assert seen == []
