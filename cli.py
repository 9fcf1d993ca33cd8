#!/usr/bin/env python3

import argparse
import asyncio
import csv
import logging
import os
from datetime import timedelta

from api_app import build_services, open_store
from models_repo import COLLECTIONS, Role, TaskKind, User, seed_demo, utcnow
from role import get_password_hash


def export_audit_csv(entries, out_path: str) -> str:
    rows = []
    for e in entries:
        rows.append([
            e.timestamp.isoformat(), e.action, e.user_id or "", e.item_type or "", e.item_id or "",
            e.from_status or "", e.to_status or "",
        ])
    with open(out_path, "w", newline='', encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["timestamp", "action", "user_id", "item_type", "item_id", "from_status", "to_status"])
        writer.writerows(rows)
    return out_path


async def create_admin(services, name: str, email: str, password: str) -> User:
    admin = User(name=name, email=email.strip().lower(), role=Role.ADMIN)
    doc = admin.to_doc()
    doc["hashed_password"] = get_password_hash(password)
    await services.store.add(COLLECTIONS["users"], doc)
    await services.audit.record_user_action(admin.id, "admin_created", {"email": admin.email})
    return admin


async def load_admin(services, admin_id: str) -> User:
    doc = await services.store.get(COLLECTIONS["users"], admin_id)
    if doc is None or doc.get("role") != Role.ADMIN.value:
        raise SystemExit(f"{admin_id} is not an administrator")
    return User(**doc)


async def run(args) -> int:
    services = build_services(await open_store())
    try:
        if args.cmd == "cities":
            for city in services.locations.valid_cities():
                print(f"{city} | {services.locations.display_name(city)} | {services.locations.region_of(city) or '-'}")
        elif args.cmd == "nearby":
            for city in services.locations.nearby(services.locations.validate(args.city)):
                print(city)
        elif args.cmd == "create-admin":
            admin = await create_admin(services, args.name, args.email, args.password)
            print(f"Created admin: {admin.id}")
        elif args.cmd == "approve":
            admin = await load_admin(services, args.admin_id)
            applied = await services.volunteers.bulk_approve(args.ids, admin)
            print(f"Approved {applied} of {len(args.ids)}")
        elif args.cmd == "suggest":
            volunteer = await services.matcher.select_best(args.city)
            if volunteer is None:
                print("No eligible volunteer")
            else:
                print(f"{volunteer.id} | {volunteer.name} | {volunteer.location} | "
                      f"workload={await services.matcher.workload_of(volunteer.id)}")
        elif args.cmd == "history":
            for e in await services.audit.query_by_item(args.id, TaskKind(args.kind)):
                print(f"{e.timestamp.isoformat()} | {e.action} | {e.from_status or '-'} -> {e.to_status or '-'} | {e.user_id}")
        elif args.cmd == "export-audit":
            end = utcnow()
            entries = await services.audit.query_by_time_range(end - timedelta(days=args.days), end, limit=args.limit)
            path = export_audit_csv(entries, args.out)
            print("Exported to", path)
        elif args.cmd == "seed":
            ids = await seed_demo(services.store)
            print("Seeded demo IDs:", ids)
        await services.dispatcher.drain()
    finally:
        await services.store.close()
    return 0


# CLI
def main(argv=None):
    p = argparse.ArgumentParser(description="Hungry Saver administration")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("cities")
    sub_nearby = sub.add_parser("nearby")
    sub_nearby.add_argument("city")

    sub_admin = sub.add_parser("create-admin")
    sub_admin.add_argument("--name", required=True)
    sub_admin.add_argument("--email", required=True)
    sub_admin.add_argument("--password", required=True)

    sub_approve = sub.add_parser("approve", help="Approve one or more pending volunteers")
    sub_approve.add_argument("--admin-id", required=True)
    sub_approve.add_argument("ids", nargs="+")

    sub_suggest = sub.add_parser("suggest", help="Least-loaded volunteer for a city")
    sub_suggest.add_argument("city")

    sub_history = sub.add_parser("history")
    sub_history.add_argument("kind", choices=[k.value for k in TaskKind])
    sub_history.add_argument("id")

    sub_export = sub.add_parser("export-audit")
    sub_export.add_argument("--out", required=True)
    sub_export.add_argument("--days", type=int, default=30)
    sub_export.add_argument("--limit", type=int, default=10000)

    sub.add_parser("seed")

    args = p.parse_args(argv)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING"))
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
