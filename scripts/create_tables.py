#!/usr/bin/env python3
"""Create the ECA tables and upsert functions for the Retail ECA Engine."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. organizations (tenants)
CREATE TABLE IF NOT EXISTS organizations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255) NOT NULL,
    slug VARCHAR(100) UNIQUE NOT NULL,
    business_data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);

-- 2. tenant_business_entities
CREATE TABLE IF NOT EXISTS tenant_business_entities (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    entity_type VARCHAR(50) NOT NULL,
    external_id VARCHAR(255) NOT NULL,
    attributes JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_tbe_live_natural_key
    ON tenant_business_entities(organization_id, entity_type, external_id)
    WHERE deleted_at IS NULL;

-- 3. tenant_business_relationships
CREATE TABLE IF NOT EXISTS tenant_business_relationships (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    source_id UUID NOT NULL REFERENCES tenant_business_entities(id) ON DELETE CASCADE,
    target_id UUID NOT NULL REFERENCES tenant_business_entities(id) ON DELETE CASCADE,
    relationship_type VARCHAR(50) NOT NULL,
    multiplicity VARCHAR(10) NOT NULL DEFAULT 'multi',
    attributes JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_tbr_single_live
    ON tenant_business_relationships(organization_id, source_id, relationship_type)
    WHERE multiplicity = 'single' AND deleted_at IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_tbr_multi_live
    ON tenant_business_relationships(organization_id, source_id, relationship_type, target_id)
    WHERE multiplicity = 'multi' AND deleted_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_tbr_target ON tenant_business_relationships(organization_id, target_id);

-- 4. tenant_business_transactions
CREATE TABLE IF NOT EXISTS tenant_business_transactions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    transaction_type VARCHAR(50) NOT NULL,
    external_id VARCHAR(255),
    status VARCHAR(50) NOT NULL,
    attributes JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_tbt_live_natural_key
    ON tenant_business_transactions(organization_id, transaction_type, external_id)
    WHERE deleted_at IS NULL AND external_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_tbt_status ON tenant_business_transactions(organization_id, transaction_type, status);

-- 5. webhook_logs (audit trail)
CREATE TABLE IF NOT EXISTS webhook_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id UUID,
    webhook_flow VARCHAR(50),
    event_type VARCHAR(100),
    event_uuid UUID NOT NULL,
    request_id VARCHAR(255),
    payload JSONB,
    status VARCHAR(20) NOT NULL,
    response_data JSONB,
    error_message TEXT,
    processing_time_ms INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_webhook_logs_org_created ON webhook_logs(organization_id, created_at DESC);
"""

FUNCTIONS = """
CREATE OR REPLACE FUNCTION eca_upsert_entity(
    p_organization_id UUID,
    p_entity_type TEXT,
    p_external_id TEXT,
    p_attributes JSONB
) RETURNS SETOF tenant_business_entities
LANGUAGE sql AS $$
    INSERT INTO tenant_business_entities AS e (organization_id, entity_type, external_id, attributes)
    VALUES (p_organization_id, p_entity_type, p_external_id, COALESCE(p_attributes, '{}'::jsonb))
    ON CONFLICT (organization_id, entity_type, external_id) WHERE deleted_at IS NULL
    DO UPDATE SET attributes = e.attributes || EXCLUDED.attributes, updated_at = NOW()
    RETURNING *;
$$;

CREATE OR REPLACE FUNCTION eca_upsert_relationship(
    p_organization_id UUID,
    p_relationship_type TEXT,
    p_source_id UUID,
    p_target_id UUID,
    p_attributes JSONB,
    p_multiplicity TEXT
) RETURNS SETOF tenant_business_relationships
LANGUAGE plpgsql AS $$
BEGIN
    IF p_multiplicity = 'single' THEN
        RETURN QUERY
        INSERT INTO tenant_business_relationships AS r
            (organization_id, source_id, target_id, relationship_type, multiplicity, attributes)
        VALUES (p_organization_id, p_source_id, p_target_id, p_relationship_type, 'single',
                COALESCE(p_attributes, '{}'::jsonb))
        ON CONFLICT (organization_id, source_id, relationship_type)
            WHERE multiplicity = 'single' AND deleted_at IS NULL
        DO UPDATE SET target_id = EXCLUDED.target_id,
                      attributes = r.attributes || EXCLUDED.attributes,
                      updated_at = NOW()
        RETURNING *;
    ELSE
        RETURN QUERY
        INSERT INTO tenant_business_relationships AS r
            (organization_id, source_id, target_id, relationship_type, multiplicity, attributes)
        VALUES (p_organization_id, p_source_id, p_target_id, p_relationship_type, 'multi',
                COALESCE(p_attributes, '{}'::jsonb))
        ON CONFLICT (organization_id, source_id, relationship_type, target_id)
            WHERE multiplicity = 'multi' AND deleted_at IS NULL
        DO UPDATE SET attributes = r.attributes || EXCLUDED.attributes,
                      updated_at = NOW()
        RETURNING *;
    END IF;
END;
$$;
"""


def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating upsert functions...")
    cur.execute(FUNCTIONS)

    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND (table_name LIKE 'tenant_business_%' "
        "OR table_name IN ('organizations', 'webhook_logs')) ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables ready: {[t[0] for t in tables]}")

    cur.execute("SELECT proname FROM pg_proc WHERE proname LIKE 'eca_upsert_%' ORDER BY proname;")
    functions = cur.fetchall()
    print(f"Functions ready: {[f[0] for f in functions]}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()
