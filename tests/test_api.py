"""
End-to-end tests for the Depot facade: persona lifecycle, file permissions,
and the wire shapes handed to a transport layer.
"""

import io

import pytest

from depot.api import Depot
from depot.errors import Forbidden, InvalidRequest, NotFound
from depot.identity import derive_id
from depot.registry import SYSTEM_PARTITION
from depot.types import Caller

LISTING_FIELDS = {
    "id", "original_name", "size", "upload_time",
    "owner_id", "owner_name", "download_link", "is_public",
}


def _upload(depot, caller, name="notes.txt", data=b"hello"):
    return depot.upload(caller, name, io.BytesIO(data))


class TestPersonaLifecycle:

    def test_name_issues_code_and_derived_id(self, depot, config):
        result = depot.set_name(Caller(persona_id="browser-1"), "Ada")
        code = result["recovery_code"]
        assert len(code) == 8 and code.isalnum() and code == code.upper()
        assert result["id"] == derive_id(config.namespace, code)

    def test_recovery_round_trip(self, depot, named_client):
        caller, code = named_client
        recovered = depot.recover(code)
        assert recovered["id"] == caller.persona_id
        assert recovered["name"] == "Ada"
        assert recovered["persona"] == "client"

    def test_recover_unknown_code(self, depot, named_client):
        with pytest.raises(NotFound):
            depot.recover("ZZZZZZZZ")

    def test_recover_requires_code(self, depot):
        with pytest.raises(InvalidRequest):
            depot.recover("")

    def test_rename_keeps_code_and_id(self, depot, named_client):
        caller, code = named_client
        result = depot.set_name(caller, "Ada Lovelace")
        assert result["id"] == caller.persona_id
        assert result["recovery_code"] == code
        assert depot.get_persona(caller)["name"] == "Ada Lovelace"

    def test_name_requires_caller_and_name(self, depot):
        with pytest.raises(InvalidRequest):
            depot.set_name(Caller(), "Ada")
        with pytest.raises(InvalidRequest):
            depot.set_name(Caller(persona_id="x"), "")

    def test_get_persona_anonymous(self, depot):
        info = depot.get_persona(Caller())
        assert info["persona"] == "client"
        assert info["name"] == ""
        info = depot.get_persona(Caller(persona_id="unknown"))
        assert info["name"] == ""

    def test_get_persona_touches_last_active(self, depot, named_client):
        caller, code = named_client
        depot.directory.touch_last_active(caller.persona_id, 1)
        info = depot.get_persona(caller)
        assert info["recovery_code"] == code
        assert info["last_active"] > 1
        assert depot.directory.get_persona(caller.persona_id).last_active == info["last_active"]


class TestEscalation:

    def test_activate_admin(self, depot, named_client):
        caller, _ = named_client
        depot.activate_admin(caller, "supersecret")
        assert depot.get_persona(caller)["persona"] == "admin"
        assert depot.recover(named_client[1])["persona"] == "admin"

    def test_wrong_secret(self, depot, named_client):
        caller, _ = named_client
        with pytest.raises(Forbidden):
            depot.activate_admin(caller, "guess")
        assert not depot.is_admin(caller)

    def test_no_configured_secret(self, tmp_path):
        from depot.config import DepotConfig
        cfg = DepotConfig(path=tmp_path / "nosecret", namespace="c01e6180-2026-4d21-828a-7239842a2222")
        with Depot(config=cfg, ops_log=False) as d:
            caller = Caller(persona_id=d.set_name(Caller(persona_id="b"), "X")["id"])
            with pytest.raises(Forbidden):
                d.activate_admin(caller, "")

    def test_requires_caller(self, depot):
        with pytest.raises(InvalidRequest):
            depot.activate_admin(Caller(), "supersecret")


class TestFilePermissions:

    def test_upload_returns_listing_shape(self, depot, named_client):
        caller, _ = named_client
        record = _upload(depot, caller, data=b"12345")
        assert set(record) == LISTING_FIELDS
        assert record["size"] == 5
        assert record["owner_id"] == caller.persona_id
        assert record["owner_name"] == "Ada"
        assert record["is_public"] is False
        assert record["download_link"] and record["download_link"] != record["id"]

    def test_upload_requires_caller(self, depot):
        with pytest.raises(InvalidRequest):
            _upload(depot, Caller())

    def test_upload_strips_directories_from_name(self, depot, named_client):
        caller, _ = named_client
        record = _upload(depot, caller, name="../../etc/passwd")
        assert record["original_name"] == "passwd"

    def test_client_sees_only_own_files(self, depot, named_client):
        alice, _ = named_client
        bob = Caller(persona_id=depot.set_name(Caller(persona_id="bob-browser"), "Bob")["id"])
        _upload(depot, alice, "a.txt")
        _upload(depot, bob, "b.txt")

        listing = depot.list_files(alice)
        assert listing["total"] == 1
        assert [f["original_name"] for f in listing["files"]] == ["a.txt"]
        assert set(listing["files"][0]) == LISTING_FIELDS

    def test_list_requires_caller_for_clients(self, depot):
        with pytest.raises(InvalidRequest):
            depot.list_files(Caller())

    def test_admin_sees_everything(self, depot, named_client, admin_caller):
        alice, _ = named_client
        _upload(depot, alice, "a.txt")
        _upload(depot, admin_caller, "root.txt")
        assert depot.list_files(admin_caller)["total"] == 2

    def test_page_defaults(self, depot, named_client):
        caller, _ = named_client
        for i in range(10):
            _upload(depot, caller, f"f{i}.txt")
        assert len(depot.list_files(caller)["files"]) == 8
        assert len(depot.list_files(caller, page=2)["files"]) == 2
        assert len(depot.list_files(caller, page=0, limit=0)["files"]) == 8
        assert depot.list_files(caller, page=5)["files"] == []

    def test_non_owner_cannot_delete(self, depot, named_client):
        alice, _ = named_client
        bob = Caller(persona_id=depot.set_name(Caller(persona_id="bob-browser"), "Bob")["id"])
        record = _upload(depot, alice)
        with pytest.raises(Forbidden):
            depot.delete_file(bob, record["id"])
        assert depot.get_file(record["id"])["id"] == record["id"]

    def test_owner_deletes(self, depot, named_client):
        alice, _ = named_client
        record = _upload(depot, alice)
        depot.delete_file(alice, record["id"])
        with pytest.raises(NotFound):
            depot.get_file(record["id"])
        assert depot.list_files(alice)["total"] == 0

    def test_admin_deletes_any(self, depot, named_client, admin_caller):
        alice, _ = named_client
        record = _upload(depot, alice)
        depot.delete_file(admin_caller, record["id"])
        with pytest.raises(NotFound):
            depot.open_download(record["id"])

    def test_delete_releases_bytes(self, depot, named_client):
        alice, _ = named_client
        record = _upload(depot, alice)
        blobs = list(depot.config.uploads_dir.iterdir())
        assert len(blobs) == 1
        depot.delete_file(alice, record["id"])
        assert list(depot.config.uploads_dir.iterdir()) == []

    def test_update_requires_admin(self, depot, named_client):
        alice, _ = named_client
        record = _upload(depot, alice)
        with pytest.raises(Forbidden):
            depot.update_file(alice, record["id"], original_name="x", owner_id="")

    def test_admin_transfers_ownership(self, depot, named_client, admin_caller):
        alice, _ = named_client
        record = _upload(depot, alice, "a.txt")
        updated = depot.update_file(
            admin_caller, record["id"], original_name="moved.txt", owner_id=admin_caller.persona_id,
        )
        assert updated["owner_name"] == "Root"
        assert depot.list_files(alice)["total"] == 0
        assert depot.get_file(record["id"])["original_name"] == "moved.txt"

    def test_set_public_by_owner_only(self, depot, named_client):
        alice, _ = named_client
        bob = Caller(persona_id=depot.set_name(Caller(persona_id="bob-browser"), "Bob")["id"])
        record = _upload(depot, alice)
        with pytest.raises(Forbidden):
            depot.set_public(bob, record["id"], True)
        assert depot.set_public(alice, record["id"], True)["is_public"] is True


class TestDownload:

    def test_by_id_and_by_link(self, depot, named_client):
        alice, _ = named_client
        record = _upload(depot, alice, data=b"payload")

        meta, stream = depot.open_download(record["id"])
        with stream:
            assert stream.read() == b"payload"
        assert meta["original_name"] == "notes.txt"

        meta, stream = depot.open_download(record["download_link"])
        with stream:
            assert stream.read() == b"payload"

    def test_unknown(self, depot):
        with pytest.raises(NotFound):
            depot.open_download("nothing")

    def test_missing_bytes(self, depot, named_client):
        alice, _ = named_client
        record = _upload(depot, alice)
        for path in depot.config.uploads_dir.iterdir():
            path.unlink()
        with pytest.raises(NotFound):
            depot.open_download(record["id"])


class TestPersonaAdministration:

    def test_list_personas_admin_only(self, depot, named_client, admin_caller):
        alice, _ = named_client
        with pytest.raises(Forbidden):
            depot.list_personas(alice)
        personas = depot.list_personas(admin_caller)
        assert [p["name"] for p in personas] == ["Ada", "Root"]
        assert set(personas[0]) == {"id", "name", "recovery_code", "last_active", "is_admin"}

    def test_admin_cannot_delete_self(self, depot, admin_caller):
        with pytest.raises(Forbidden):
            depot.delete_persona(admin_caller, admin_caller.persona_id)
        assert depot.is_admin(admin_caller)

    def test_admin_cannot_demote_self(self, depot, admin_caller):
        persona = depot.directory.get_persona(admin_caller.persona_id)
        with pytest.raises(Forbidden):
            depot.update_persona(
                admin_caller, admin_caller.persona_id,
                name=persona.name, recovery_code=persona.recovery_code, is_admin=False,
            )
        assert depot.is_admin(admin_caller)

    def test_system_persona_protected(self, depot, admin_caller):
        with pytest.raises(Forbidden):
            depot.delete_persona(admin_caller, SYSTEM_PARTITION)

    def test_admin_deletes_client(self, depot, named_client, admin_caller):
        alice, code = named_client
        depot.delete_persona(admin_caller, alice.persona_id)
        with pytest.raises(NotFound):
            depot.recover(code)

    def test_client_cannot_manage_personas(self, depot, named_client, admin_caller):
        alice, _ = named_client
        with pytest.raises(Forbidden):
            depot.delete_persona(alice, admin_caller.persona_id)
        with pytest.raises(Forbidden):
            depot.update_persona(alice, alice.persona_id, name="A", recovery_code="X", is_admin=True)

    def test_reassigned_code_recovers_original_id(self, depot, named_client, admin_caller):
        alice, _ = named_client
        depot.update_persona(admin_caller, alice.persona_id, name="Ada", recovery_code="NEWCODE1", is_admin=False)
        assert depot.recover("NEWCODE1")["id"] == alice.persona_id
        # Renaming afterwards must not fork a second persona
        depot.set_name(alice, "Ada 2")
        assert len(depot.list_personas(admin_caller)) == 2
