"""
Unit tests for team state models and stores.
"""

import json

import pytest

from browserqa.browser.models import ProviderApiKeys, QASettings
from browserqa.core.exceptions import NotFoundError, StateStoreError
from browserqa.state.models import ProfileStatus, ProviderProfile, ProviderProfiles, QAState
from browserqa.state.store import InMemoryStateStore, JsonFileStateStore


class TestQAState:
    """Test cases for QAState helpers."""

    def test_require_project(self, qa_state):
        """Test project lookup."""
        assert qa_state.require_project("proj-1").name == "Shop"
        with pytest.raises(NotFoundError, match="Project not found."):
            qa_state.require_project("missing")

    def test_account_map_uses_provider_profile(self, qa_state):
        """Test that credentials carry the profile of the requested provider family."""
        account = qa_state.find_account("acct-1")
        account.provider_profiles.set(
            "hyperbrowser-hyperagent",
            ProviderProfile(profile_id="hb-prof", status=ProfileStatus.AUTHENTICATED),
        )

        hyper = qa_state.account_map(["proj-1"], "hyperbrowser-browser-use")
        cloud = qa_state.account_map(["proj-1"], "browser-use-cloud")

        assert set(hyper) == {"acct-1", "acct-2"}
        assert hyper["acct-1"].profile_id == "hb-prof"
        assert hyper["acct-1"].email == "admin@shop.example"
        assert cloud["acct-1"].profile_id is None

    def test_account_map_filters_projects(self, qa_state):
        """Test that only accounts of the requested projects are included."""
        assert qa_state.account_map(["other"], "browser-use-cloud") == {}

    def test_profile_slots(self):
        """Test that Hyperbrowser variants share one profile slot."""
        assert ProviderProfiles.slot_for("hyperbrowser-browser-use") == "hyperbrowser"
        assert ProviderProfiles.slot_for("hyperbrowser-hyperagent") == "hyperbrowser"
        assert ProviderProfiles.slot_for("browser-use-cloud") == "browser_use_cloud"

    def test_sanitized_for_storage(self, qa_state):
        """Test that API keys are stripped without touching the original."""
        qa_state.settings = QASettings(provider_api_keys=ProviderApiKeys(hyperbrowser="secret"))

        stored = qa_state.sanitized_for_storage()

        assert stored.settings.provider_api_keys.hyperbrowser is None
        assert qa_state.settings.provider_api_keys.hyperbrowser == "secret"


class TestInMemoryStateStore:
    """Test cases for InMemoryStateStore."""

    @pytest.mark.asyncio
    async def test_unknown_team_gets_default_state(self):
        """Test that a fresh team starts empty."""
        state = await InMemoryStateStore().load_state("new-team")

        assert state.projects == []

    @pytest.mark.asyncio
    async def test_transaction_saves_on_success(self, store):
        """Test that changes made inside a transaction are persisted."""
        async with store.transaction("team-1", "u-1") as state:
            state.require_project("proj-1").test_count = 7

        reloaded = await store.load_state("team-1")
        assert reloaded.require_project("proj-1").test_count == 7

    @pytest.mark.asyncio
    async def test_transaction_discards_on_error(self, store):
        """Test that an exception inside a transaction leaves state unchanged."""
        with pytest.raises(RuntimeError):
            async with store.transaction("team-1") as state:
                state.require_project("proj-1").test_count = 7
                raise RuntimeError("boom")

        reloaded = await store.load_state("team-1")
        assert reloaded.require_project("proj-1").test_count == 0

    @pytest.mark.asyncio
    async def test_loads_are_copies(self, store):
        """Test that mutating a loaded state does not leak into the store."""
        state = await store.load_state("team-1")
        state.projects.clear()

        assert len((await store.load_state("team-1")).projects) == 1

    @pytest.mark.asyncio
    async def test_save_strips_api_keys(self, store):
        """Test that provider keys are never stored."""
        async with store.transaction("team-1") as state:
            state.settings = QASettings(provider_api_keys=ProviderApiKeys(browser_use_cloud="secret"))

        reloaded = await store.load_state("team-1")
        assert reloaded.settings.provider_api_keys.browser_use_cloud is None


class TestJsonFileStateStore:
    """Test cases for JsonFileStateStore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path, qa_state):
        """Test saving and reloading a team state from disk."""
        store = JsonFileStateStore(tmp_path / "state")
        qa_state.settings = QASettings(provider_api_keys=ProviderApiKeys(hyperbrowser="secret"))

        await store.save_state("team-1", "u-1", qa_state)
        reloaded = await store.load_state("team-1")

        assert reloaded.require_project("proj-1").website_url == "https://shop.example"
        assert [a.id for a in reloaded.user_accounts["proj-1"]] == ["acct-1", "acct-2"]
        raw = json.loads(store.path_for("team-1").read_text(encoding="utf-8"))
        assert raw["settings"]["provider_api_keys"]["hyperbrowser"] is None
        assert not store.path_for("team-1").with_suffix(".json.tmp").exists()

    def test_path_for_sanitizes_team_id(self, tmp_path):
        """Test that team ids cannot escape the state directory."""
        store = JsonFileStateStore(tmp_path)

        assert store.path_for("../evil/team") == tmp_path / ".._evil_team.json"
        with pytest.raises(StateStoreError):
            store.path_for("")

    @pytest.mark.asyncio
    async def test_missing_file_is_default_state(self, tmp_path):
        """Test that a team without a file starts empty."""
        state = await JsonFileStateStore(tmp_path).load_state("team-1")

        assert state == QAState(last_updated=state.last_updated)

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        """Test that unreadable state raises StateStoreError."""
        store = JsonFileStateStore(tmp_path)
        store.path_for("team-1").write_text("{not json", encoding="utf-8")

        with pytest.raises(StateStoreError) as exc_info:
            await store.load_state("team-1")

        assert exc_info.value.operation == "load"

    def test_from_config(self, config):
        """Test that the store uses the configured state directory."""
        store = JsonFileStateStore.from_config(config)

        assert store.state_dir == config.state_dir
