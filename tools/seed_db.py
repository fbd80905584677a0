"""Seed users and certificates from a JSON fixture.
Rows that already exist are left untouched, so the script can be re-run.
Usage: PYTHONPATH=. python tools/seed_db.py fixtures/seed.json [--db PATH] [--reset]
"""
import argparse, json
from certverify.config import DB_PATH
from certverify.db import SqliteRecordStore
from certverify.models import Certificate, User

def seed(store, fixture):
    for raw in fixture.get("users", []):
        user = User.model_validate(raw)
        if store.get_user(user.id) is None:
            store.insert_user(user)
    for raw in fixture.get("certificates", []):
        certificate = Certificate.model_validate(raw)
        if store.get_certificate(certificate.user_id, certificate.id) is None:
            store.insert_certificate(certificate)

def main(argv=None):
    ap = argparse.ArgumentParser(description="Seed the record store from a JSON fixture")
    ap.add_argument("fixture")
    ap.add_argument("--db", default=DB_PATH)
    ap.add_argument("--reset", action="store_true", help="clear all tables first")
    args = ap.parse_args(argv)

    with open(args.fixture, encoding="utf-8") as f:
        fixture = json.load(f)

    store = SqliteRecordStore(args.db)
    try:
        store.init_db()
        if args.reset:
            store.reset()
        seed(store, fixture)
        stats = store.get_stats()
    finally:
        store.close()
    print(json.dumps(stats, indent=2))
    return stats

if __name__ == "__main__":
    main()
