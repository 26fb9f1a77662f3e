"""
Add TradieConnect connection and outgoing webhook tables

Tables:
- tradieconnect_connections (encrypted SSO tokens, session state)
- webhook_subscriptions (target URL, filters, signing secret, retry config)
- webhook_logs (one row per event per subscription, with attempt count and retry time)

Run with: python -m migrations.add_tradieconnect_and_webhook_tables [downgrade]
"""

import sys

from sqlalchemy import text

from tradie_api.config import DATABASE_URL
from tradie_api.database import build_engine

engine = build_engine(DATABASE_URL)


def upgrade():
    with engine.connect() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS tradieconnect_connections (
                    id SERIAL PRIMARY KEY,
                    organization_id INTEGER NOT NULL REFERENCES organizations(id),
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    tc_user_id VARCHAR(255) NOT NULL,
                    tc_token TEXT NOT NULL,
                    tc_refresh_token TEXT,
                    tc_token_expires_at TIMESTAMP,
                    session_state VARCHAR(20) NOT NULL DEFAULT 'unknown',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    connected_at TIMESTAMP DEFAULT NOW(),
                    last_synced_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                );
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_tradieconnect_connections_user_active
                ON tradieconnect_connections (user_id, is_active);
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_tradieconnect_connections_active_user
                ON tradieconnect_connections (user_id) WHERE is_active;
                """
            )
        )

        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS webhook_subscriptions (
                    id SERIAL PRIMARY KEY,
                    organization_id INTEGER NOT NULL REFERENCES organizations(id),
                    subscription_id VARCHAR(100) NOT NULL UNIQUE,
                    name VARCHAR(255),
                    event_type VARCHAR(100) NOT NULL,
                    target_url TEXT NOT NULL,
                    filters JSON,
                    secret_key VARCHAR(255),
                    headers JSON,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    last_triggered_at TIMESTAMP,
                    trigger_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    last_failure_at TIMESTAMP,
                    last_failure_reason TEXT,
                    max_retries INTEGER DEFAULT 3,
                    retry_delay_seconds INTEGER DEFAULT 60,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                );
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_webhook_subscriptions_org_event
                ON webhook_subscriptions (organization_id, event_type);
                """
            )
        )

        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS webhook_logs (
                    id SERIAL PRIMARY KEY,
                    subscription_id INTEGER NOT NULL REFERENCES webhook_subscriptions(id),
                    organization_id INTEGER NOT NULL REFERENCES organizations(id),
                    event_type VARCHAR(100) NOT NULL,
                    event_id VARCHAR(36) NOT NULL,
                    target_url TEXT NOT NULL,
                    request_body TEXT NOT NULL,
                    request_headers JSON,
                    status_code INTEGER,
                    response_body TEXT,
                    delivery_duration_ms INTEGER,
                    status VARCHAR(50) NOT NULL DEFAULT 'pending',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_at TIMESTAMP,
                    triggered_at TIMESTAMP NOT NULL DEFAULT NOW(),
                    delivered_at TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT NOW()
                );
                """
            )
        )
        # Requeue cron scans by status and retry time
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_webhook_logs_status_retry
                ON webhook_logs (status, next_retry_at);
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_webhook_logs_subscription_triggered
                ON webhook_logs (subscription_id, triggered_at DESC);
                """
            )
        )
        conn.commit()
    print("Migration add_tradieconnect_and_webhook_tables applied successfully")


def downgrade():
    with engine.connect() as conn:
        conn.execute(text("DROP TABLE IF EXISTS webhook_logs;"))
        conn.execute(text("DROP TABLE IF EXISTS webhook_subscriptions;"))
        conn.execute(text("DROP TABLE IF EXISTS tradieconnect_connections;"))
        conn.commit()
    print("Migration add_tradieconnect_and_webhook_tables rolled back")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "downgrade":
        downgrade()
    else:
        upgrade()
