import json
import os
import zipfile

import pytest

from certverify.db import SqliteRecordStore
from certverify.models import VerificationStatus

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
FIXTURE = os.path.join(ROOT, "fixtures", "seed.json")


@pytest.fixture(autouse=True)
def tools_on_path(monkeypatch):
    monkeypatch.syspath_prepend(os.path.join(ROOT, "tools"))


def test_seed_db_loads_fixture_once(tmp_path):
    import seed_db

    db = str(tmp_path / "seed.db")
    first = seed_db.main([FIXTURE, "--db", db])
    second = seed_db.main([FIXTURE, "--db", db])

    assert first["users_count"] == 1
    assert first["certificates_count"] == 2
    assert second == first


def test_export_audit_bundle(tmp_path):
    import export_audit_bundle
    import seed_db

    db = str(tmp_path / "export.db")
    store = SqliteRecordStore(db)
    store.init_db()
    with open(FIXTURE, encoding="utf-8") as f:
        seed_db.seed(store, json.load(f))
    store.append_verification_log("c1", "verification_process", "started", {"message": "Verification process started"})
    store.update_certificate_status("c1", VerificationStatus.VERIFIED, {"total_verification": "pass"})
    store.close()

    out = export_audit_bundle.main(["u1", "c1", "--db", db, "--out-dir", str(tmp_path)])

    with zipfile.ZipFile(out) as z:
        names = set(z.namelist())
        certificate = json.loads(z.read("certificate.json"))
        logs = json.loads(z.read("verification_logs.json"))
    assert names == {"certificate.json", "verification_logs.json", "manifest.json"}
    assert certificate["verification_status"] == "verified"
    assert logs[0]["verification_step"] == "verification_process"


def test_export_unknown_certificate_exits(tmp_path):
    import export_audit_bundle

    db = str(tmp_path / "empty.db")
    SqliteRecordStore(db).init_db()

    with pytest.raises(SystemExit):
        export_audit_bundle.main(["u1", "c1", "--db", db])


def test_make_auth_token_requires_secret(monkeypatch):
    import make_auth_token

    monkeypatch.setattr(make_auth_token, "AUTH_SECRET", "")
    with pytest.raises(SystemExit):
        make_auth_token.main("u1")


def test_make_auth_token_prints_verifiable_token(monkeypatch, capsys):
    import make_auth_token
    from certverify.security import verify_auth_token

    monkeypatch.setattr(make_auth_token, "AUTH_SECRET", "tool-secret")
    make_auth_token.main("u1", 120)

    printed = json.loads(capsys.readouterr().out)
    assert printed["sub"] == "u1"
    assert verify_auth_token(printed["token"], "tool-secret").sub == "u1"
