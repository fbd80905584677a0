"""Export an auditor bundle for one certificate:
- certificate row (status and last verification details)
- durable verification log, newest first
- per-run audit entries still held in the key-value store, when run ids are given
Produces: audit_bundle_<certificate_id>_<epoch>.zip
"""
import argparse, json, time, zipfile
from pathlib import Path
from certverify.audit import AuditLogger
from certverify.config import DB_PATH, KV_BACKEND
from certverify.db import SqliteRecordStore
from certverify.kv_backends import get_kv_backend
from certverify.util import canonicalize

PAGE_SIZE = 500

def collect_verification_logs(store, certificate_id):
    records, offset = [], 0
    while True:
        page = store.list_verification_logs(certificate_id, limit=PAGE_SIZE, offset=offset)
        records.extend(page)
        if len(page) < PAGE_SIZE:
            return records
        offset += PAGE_SIZE

def main(argv=None):
    ap = argparse.ArgumentParser(description="Export the verification trail of a certificate")
    ap.add_argument("user_id")
    ap.add_argument("certificate_id")
    ap.add_argument("--request-id", action="append", default=[], help="audit run to include (repeatable)")
    ap.add_argument("--db", default=DB_PATH)
    ap.add_argument("--out-dir", default=".")
    args = ap.parse_args(argv)

    store = SqliteRecordStore(args.db)
    certificate = store.get_certificate(args.user_id, args.certificate_id)
    if certificate is None:
        print(f"Certificate {args.certificate_id} not found for user {args.user_id}"); raise SystemExit(1)

    items = {
        "certificate.json": certificate.model_dump(mode="json"),
        "verification_logs.json": [r.model_dump(mode="json") for r in collect_verification_logs(store, certificate.id)],
    }
    if args.request_id:
        kv = get_kv_backend(KV_BACKEND)
        for request_id in args.request_id:
            entries = AuditLogger.get_request_logs(kv, request_id)
            items[f"audit/{request_id}.json"] = [e.model_dump(mode="json") for e in entries]

    ts = int(time.time())
    out = Path(args.out_dir) / f"audit_bundle_{certificate.id}_{ts}.zip"
    with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as z:
        for arc, obj in items.items():
            z.writestr(arc, canonicalize(obj))
        z.writestr("manifest.json", canonicalize({
            "certificate_id": certificate.id,
            "exported_at": ts,
            "files": sorted(items),
        }))
    store.close()
    print(str(out))
    return out

if __name__ == "__main__":
    main()
