#!/usr/bin/env python3
"""
Approval Routing Engine — Demo Seed.

Creates a small four-level organization tree with leadership roles,
role holders and the default approval matrices, so a flow can be
started right away:

    Church (L1) → Committee (L2) → Parish (L3) → Youth / Music (L4)

Usage:
    python scripts/seed_demo_data.py                 # seed tenant "default"
    python scripts/seed_demo_data.py --tenant demo   # seed another slug
    python scripts/seed_demo_data.py --reset         # drop + create all tables first
"""

import argparse
import sys

sys.path.insert(0, ".")

from app import create_app
from app.models import db, drop_all_tables
from app.models.auth import Tenant, User
from app.services import matrix_service, organization_service, role_inheritance_service

ROLES = [
    # name, rank, is_leadership
    ("Senior Pastor", 100, True),
    ("Facilities Chair", 70, True),
    ("Parish Head", 50, True),
    ("Department Head", 30, True),
    ("Deputy Head", 20, False),
    ("Accountant", 10, False),
]

TREE = [
    # code, name, parent code
    ("CH", "Grace Church", None),
    ("CM-FAC", "Facilities Committee", "CH"),
    ("PA-N", "North Parish", "CM-FAC"),
    ("DEP-YTH", "Youth Ministry", "PA-N"),
    ("DEP-MUS", "Music Ministry", "PA-N"),
]

HOLDERS = [
    # org code, role name, user email, full name
    ("CH", "Senior Pastor", "pastor@example.org", "Pastor Anselm"),
    ("CH", "Facilities Chair", "facilities@example.org", "Bea Builder"),
    ("CH", "Accountant", "accounts@example.org", "Carl Ledger"),
    ("PA-N", "Parish Head", "parish@example.org", "Dora North"),
    ("DEP-YTH", "Department Head", "youth@example.org", "Eli Youth"),
    ("DEP-YTH", "Deputy Head", "youth.deputy@example.org", "Fay Youth"),
    ("DEP-MUS", "Department Head", "music@example.org", "Gus Chord"),
]


def _tenant(slug):
    tenant = Tenant.query.filter_by(slug=slug).first()
    if tenant is None:
        tenant = Tenant(name=slug.title(), slug=slug)
        db.session.add(tenant)
        db.session.commit()
        print(f"  ✅ Tenant created: {slug} (id={tenant.id})")
    return tenant


def _user(tenant_id, email, full_name):
    user = User.query.filter_by(tenant_id=tenant_id, email=email).first()
    if user is None:
        user = User(tenant_id=tenant_id, email=email, full_name=full_name)
        db.session.add(user)
        db.session.commit()
    return user


def seed(slug):
    tenant = _tenant(slug)
    tid = tenant.id

    if organization_service.list_organizations(tid):
        print(f"  ⏭️  Tenant '{slug}' already has organizations, skipping tree")
    else:
        orgs = {}
        for code, name, parent in TREE:
            payload = {"code": code, "name": name}
            if parent:
                payload["parent_id"] = orgs[parent]["id"]
            orgs[code] = organization_service.create_organization(tid, payload)
        print(f"  ✅ Organizations: {len(orgs)}")

        roles = {}
        for name, rank, leadership in ROLES:
            roles[name] = role_inheritance_service.create_role(
                tid, {"name": name, "rank": rank, "is_leadership": leadership})
        print(f"  ✅ Roles: {len(roles)}")

        for code, role_name, email, full_name in HOLDERS:
            org_id = orgs[code]["id"]
            role_id = roles[role_name]["id"]
            role_inheritance_service.assign_role(tid, org_id, role_id, cascade=False)
            user = _user(tid, email, full_name)
            role_inheritance_service.add_membership(tid, org_id, user.id, role_id)
        _user(tid, "requester@example.org", "Rita Requester")
        print(f"  ✅ Role holders: {len(HOLDERS)}")

    created = matrix_service.seed_default_matrices(tid)
    print(f"  ✅ Default matrices created: {created}")


def main():
    parser = argparse.ArgumentParser(description="Seed approval routing demo data")
    parser.add_argument("--tenant", default="default", help="Tenant slug")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables")
    args = parser.parse_args()

    app = create_app("development")
    with app.app_context():
        if args.reset:
            drop_all_tables()
            db.create_all()
            print("  🗑️  Database reset")
        seed(args.tenant)
    print("  Done.")


if __name__ == "__main__":
    main()
