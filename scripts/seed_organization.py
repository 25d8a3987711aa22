#!/usr/bin/env python3
"""
Seed a tenant organization for local webhook testing.

Reads SEED_ORG_NAME and SEED_ORG_SLUG from .env file.
Run from project root: python scripts/seed_organization.py
"""

import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.db import get_supabase


def main():
    name = os.getenv("SEED_ORG_NAME")
    slug = os.getenv("SEED_ORG_SLUG")

    if not name or not slug:
        print("Error: SEED_ORG_NAME and SEED_ORG_SLUG must be set in .env")
        sys.exit(1)

    supabase = get_supabase()
    existing = supabase.table("organizations").select("id").eq("slug", slug).execute()
    if existing.data:
        print(f"Organization '{slug}' already exists: {existing.data[0]['id']}")
        sys.exit(0)

    result = supabase.table("organizations").insert({
        "name": name,
        "slug": slug,
    }).execute()

    if result.data:
        org = result.data[0]
        print("Created organization:")
        print(f"  ID: {org['id']}")
        print(f"  Slug: {org['slug']}")
        print(f"  Created: {org['created_at']}")
    else:
        print("Error: Failed to create organization")
        sys.exit(1)


if __name__ == "__main__":
    main()
