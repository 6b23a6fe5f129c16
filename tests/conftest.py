"""Shared test fixtures for the billing test suite."""

import os
import pytest
from uuid import UUID
from pathlib import Path

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module.reset_cache()

from core.access import AccessScope
from core.event_bus import EventBus
from tests.fakes import InMemoryBillingStore

SCHEMA_PATH = Path(__file__).parent.parent / "schema.sql"


# =============================================================================
# ACTOR CONSTANTS
# =============================================================================

# Primary actor - finance operator with every permission
TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")

# Secondary actor - restricted to an explicit customer list per test
TEST_ACTOR_B_ID = UUID("00000000-0000-0000-0000-000000000002")

EVENT_TYPES = (
    "InvoiceRunSucceeded",
    "InvoiceRunFailed",
    "CreditDepleted",
    "CreditsExpired",
    "InvoiceLocked",
    "InvoiceCancelled",
)


# =============================================================================
# ACCESS FIXTURES
# =============================================================================


@pytest.fixture
def system_access() -> AccessScope:
    """Unrestricted scope used by scheduled jobs."""
    return AccessScope.system()


@pytest.fixture
def operator_access() -> AccessScope:
    """Finance operator: all permissions, all customers."""
    return AccessScope.for_actor(TEST_ACTOR_ID, ["*"])


@pytest.fixture
def scoped_access():
    """Factory for an actor limited to the given customers."""
    def _scoped(*customer_ids, permissions=("*",)):
        return AccessScope.for_actor(TEST_ACTOR_B_ID, permissions, customer_ids)
    return _scoped


# =============================================================================
# IN-MEMORY STORE FIXTURES
# =============================================================================


@pytest.fixture
def store() -> InMemoryBillingStore:
    """Fresh in-memory BillingStore per test."""
    return InMemoryBillingStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def published(event_bus) -> list:
    """Every event published on event_bus, in order."""
    events = []
    for event_type in EVENT_TYPES:
        event_bus.subscribe(event_type, events.append)
    return events


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def db():
    """
    Session-scoped PostgresClient against a disposable database.

    Skips when neither BILLING_DATABASE_URL nor Vault is configured. The
    schema is (re)applied once per session.
    """
    if not os.getenv(vault_module.DATABASE_URL_ENV) and not os.getenv("VAULT_ADDR"):
        pytest.skip("No database configured (set BILLING_DATABASE_URL or VAULT_ADDR)")

    from clients.postgres_client import PostgresClient
    from clients.vault_client import get_database_url

    client = PostgresClient(get_database_url())
    client.execute(SCHEMA_PATH.read_text())
    yield client
    client.close()


@pytest.fixture
def reset_db_state(db):
    """Empty every billing table before a database test."""
    db.execute("""
        TRUNCATE
            invoice_run_snapshots, special_rules,
            credit_ledger, invoices, invoice_runs, credits,
            pricing_rules, pricing_lists, sku_group_mappings, sku_groups,
            raw_cost_entries, customer_projects, projects, customers
        CASCADE
    """)
    yield


@pytest.fixture
def pg_store(db, reset_db_state):
    """PostgresBillingStore over the test database."""
    from core.repositories import PostgresBillingStore
    return PostgresBillingStore(db)
