"""Tests for the version lifecycle."""

import pytest
import yaml
from sqlalchemy import event, text
from sqlalchemy.exc import IntegrityError

from conftest import TENANT, USER, case_definition, onboarding_definition
from guidance_engine.errors import BadRequest, InvalidDefinition, InvalidState, NotFound
from guidance_engine.graph import ScriptDefinition
from guidance_engine.storage import ScriptEventRepository, ScriptRepository, VersionStatus, get_engine, transaction


def definition(data=None) -> ScriptDefinition:
    return ScriptDefinition.model_validate(data or onboarding_definition())


def statuses(script_id: str) -> dict[int, VersionStatus]:
    return {v.version: v.status for v in ScriptRepository().list_versions(script_id)}


@pytest.fixture
def two_versions(versions):
    """Script with v1 ACTIVE and v2 DRAFT."""
    script = versions.create_script(TENANT, "onboarding", "Onboarding")
    versions.create_version(script.id, definition(), actor_id=USER)
    versions.publish(script.id, 1)
    versions.create_version(script.id, definition(case_definition()), actor_id=USER)
    return script


class TestCreate:
    def test_versions_number_up_from_one(self, versions):
        script = versions.create_script(TENANT, "onboarding")
        v1 = versions.create_version(script.id, definition(), actor_id=USER)
        v2 = versions.create_version(script.id, definition())

        assert (v1.version, v2.version) == (1, 2)
        assert v1.status == VersionStatus.DRAFT
        assert v1.created_by == USER
        assert [v.version for v in versions.list_versions(script.id)] == [2, 1]

    def test_version_event(self, versions):
        script = versions.create_script(TENANT, "onboarding")
        versions.create_version(script.id, definition(), actor_id=USER)

        [created] = ScriptEventRepository().get_events_by_type("GUIDANCE_VERSION_CREATED")
        assert created.target_id == script.id
        assert created.meta == {"version": 1}

    def test_duplicate_key_per_tenant(self, versions):
        versions.create_script(TENANT, "onboarding")
        with pytest.raises(BadRequest):
            versions.create_script(TENANT, "onboarding")
        assert versions.create_script("tenant-2", "onboarding").key == "onboarding"

    def test_unknown_script(self, versions):
        with pytest.raises(NotFound):
            versions.create_version("missing", definition())
        with pytest.raises(NotFound):
            versions.list_versions("missing")


class TestPublish:
    """Test the publish transition."""

    def test_first_publish(self, versions):
        script = versions.create_script(TENANT, "onboarding")
        versions.create_version(script.id, definition())

        published = versions.publish(script.id, 1, actor_id=USER)

        assert published.status == VersionStatus.ACTIVE
        assert published.published_at is not None

    def test_retires_previous(self, versions, two_versions):
        versions.publish(two_versions.id, 2, actor_id=USER)

        assert statuses(two_versions.id) == {1: VersionStatus.RETIRED, 2: VersionStatus.ACTIVE}

    def test_active_script_follows_publish(self, versions, two_versions):
        assert versions.get_active_script(TENANT, "onboarding").version.version == 1

        versions.publish(two_versions.id, 2)

        active = versions.get_active_script(TENANT, "onboarding")
        assert active.version.version == 2
        assert active.script.id == two_versions.id
        assert {n.key for n in active.graph.nodes.values()} == {"s0", "create", "done"}

    def test_republish_active_refreshes(self, versions, two_versions):
        before = versions.get_version(two_versions.id, 1).published_at
        again = versions.publish(two_versions.id, 1)

        assert again.status == VersionStatus.ACTIVE
        assert again.published_at >= before
        assert statuses(two_versions.id)[1] == VersionStatus.ACTIVE

    def test_republish_retired(self, versions, two_versions):
        versions.publish(two_versions.id, 2)
        versions.publish(two_versions.id, 1)

        assert statuses(two_versions.id) == {1: VersionStatus.ACTIVE, 2: VersionStatus.RETIRED}

    def test_publish_event(self, versions, two_versions):
        versions.publish(two_versions.id, 2, actor_id=USER)

        events = ScriptEventRepository().get_events_for_target("Script", two_versions.id)
        publishes = [e for e in events if e.event_type == "GUIDANCE_PUBLISH"]
        assert [e.meta for e in publishes] == [{"version": 1}, {"version": 2}]
        assert publishes[-1].actor == USER

    def test_unknown_version(self, versions, two_versions):
        with pytest.raises(NotFound):
            versions.publish(two_versions.id, 9)
        with pytest.raises(NotFound):
            versions.publish("missing", 1)

    def test_invalid_graph_is_not_published(self, versions):
        script = versions.create_script(TENANT, "broken")
        versions.create_version(
            script.id,
            definition(
                {
                    "nodes": [{"key": "s0", "type": "START"}, {"key": "act", "type": "ACTION"}],
                    "edges": [{"source": "s0", "target": "act"}],
                }
            ),
        )

        with pytest.raises(InvalidDefinition, match="missing config.action"):
            versions.publish(script.id, 1)
        assert statuses(script.id) == {1: VersionStatus.DRAFT}

    def test_malformed_choice_config_is_not_published(self, versions):
        data = onboarding_definition()
        data["nodes"][2]["config"]["groups"][0]["rules"][0]["clauses"][0]["variable"] = 5
        script = versions.create_script(TENANT, "onboarding")
        versions.create_version(script.id, definition(data))

        with pytest.raises(InvalidDefinition, match="CHOICE node c0: Invalid CHOICE config"):
            versions.publish(script.id, 1)
        assert statuses(script.id) == {1: VersionStatus.DRAFT}

    def test_no_active_version(self, versions):
        versions.create_script(TENANT, "onboarding")
        with pytest.raises(NotFound):
            versions.get_active_script(TENANT, "onboarding")
        with pytest.raises(NotFound):
            versions.get_active_script(TENANT, "missing")


class TestPublishAtomicity:
    """The retire and activate writes commit together or not at all."""

    def test_failure_after_retire_rolls_back(self, versions, two_versions):
        engine = get_engine()

        def fail_on_activate(conn, cursor, statement, parameters, context, executemany):
            if "published_at =" in statement:
                raise RuntimeError("connection lost")

        event.listen(engine, "before_cursor_execute", fail_on_activate)
        try:
            with pytest.raises(RuntimeError):
                versions.publish(two_versions.id, 2)
        finally:
            event.remove(engine, "before_cursor_execute", fail_on_activate)

        assert statuses(two_versions.id) == {1: VersionStatus.ACTIVE, 2: VersionStatus.DRAFT}

    def test_second_active_row_is_rejected_by_index(self, two_versions):
        with pytest.raises(IntegrityError):
            with transaction() as conn:
                conn.execute(
                    text("UPDATE script_versions SET status = 'ACTIVE' WHERE script_id = :id AND version = 2"),
                    {"id": two_versions.id},
                )

        assert statuses(two_versions.id)[2] == VersionStatus.DRAFT

    def test_index_violation_maps_to_invalid_state(self, two_versions):
        scripts = ScriptRepository()

        def activate_without_retire(conn, cursor, statement, parameters, context, executemany):
            if "SET status = ?" in statement and "version != ?" in statement:
                # Turn the retire step into a no-op so activation collides
                return statement.replace("version != ?", "1 = 0 AND version != ?"), parameters
            return statement, parameters

        engine = get_engine()
        event.listen(engine, "before_cursor_execute", activate_without_retire, retval=True)
        try:
            with pytest.raises(InvalidState):
                scripts.publish_version(two_versions.id, 2)
        finally:
            event.remove(engine, "before_cursor_execute", activate_without_retire)

        assert statuses(two_versions.id) == {1: VersionStatus.ACTIVE, 2: VersionStatus.DRAFT}


class TestSeedAndExport:
    """Test seeding scripts from definitions and exporting versions."""

    def test_seed_creates_and_publishes(self, versions):
        [published] = versions.seed_definitions([definition()], tenant_id=TENANT, actor_id=USER)

        assert published.status == VersionStatus.ACTIVE
        active = versions.get_active_script(TENANT, "onboarding")
        assert active.script.name == "Onboarding"
        assert active.version.version == 1

    def test_seed_skips_existing_and_keyless(self, versions):
        versions.seed_definitions([definition()], tenant_id=TENANT)
        keyless = onboarding_definition()
        del keyless["key"]

        again = versions.seed_definitions([definition(), definition(keyless)], tenant_id=TENANT)

        assert again == []
        script = versions.get_active_script(TENANT, "onboarding").script
        assert [v.version for v in versions.list_versions(script.id)] == [1]

    def test_export_round_trips_through_loader(self, versions):
        [published] = versions.seed_definitions([definition()], tenant_id=TENANT)

        exported = yaml.safe_load(versions.export_version(published.script_id, 1))

        assert exported["key"] == "onboarding"
        assert exported["entry"] == "s0"
        assert [n["key"] for n in exported["nodes"]] == ["s0", "age", "c0", "adult", "minor"]
        assert exported["edges"] == [{"source": "s0", "target": "age"}, {"source": "age", "target": "c0"}]
        assert exported["nodes"][2]["config"]["defaultTarget"] == "minor"

    def test_export_unknown_version(self, versions):
        [published] = versions.seed_definitions([definition()], tenant_id=TENANT)
        with pytest.raises(NotFound):
            versions.export_version(published.script_id, 5)
