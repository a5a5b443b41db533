"""DynamoDB schema definitions and key builders for the remote state backend."""

from typing import Any

# Index names
GSI1_NAME = "GSI1"  # For workspace listing

# Key prefixes
WORKSPACE_PREFIX = "WORKSPACE#"

# Sort keys
SK_META = "#META"
SK_LOCK = "#LOCK"
SK_SNAPSHOT = "#SNAPSHOT#"

# All workspace META records share this GSI1 partition
GSI1_PK_WORKSPACES = "WORKSPACES"

SERIAL_WIDTH = 12


def pk_workspace(workspace: str) -> str:
    """Build partition key for a workspace."""
    return f"{WORKSPACE_PREFIX}{workspace}"


def sk_meta() -> str:
    """Build sort key for workspace metadata (head serial, lineage)."""
    return SK_META


def sk_lock() -> str:
    """Build sort key for the workspace lock record."""
    return SK_LOCK


def sk_snapshot(serial: int) -> str:
    """Build sort key for a snapshot; zero-padded so SK order is serial order."""
    return f"{SK_SNAPSHOT}{serial:0{SERIAL_WIDTH}d}"


def sk_snapshot_prefix() -> str:
    """Build sort key prefix for querying all snapshots of a workspace."""
    return SK_SNAPSHOT


def gsi1_pk_workspaces() -> str:
    """Build GSI1 partition key for workspace listing."""
    return GSI1_PK_WORKSPACES


def gsi1_sk_workspace(workspace: str) -> str:
    """Build GSI1 sort key for a workspace entry."""
    return f"{WORKSPACE_PREFIX}{workspace}"


def parse_workspace_pk(pk: str) -> str:
    """Parse the workspace name from a partition key."""
    if not pk.startswith(WORKSPACE_PREFIX):
        raise ValueError(f"Invalid workspace PK: {pk}")
    return pk[len(WORKSPACE_PREFIX) :]


def parse_snapshot_sk(sk: str) -> int:
    """Parse the serial from a snapshot sort key."""
    # SK format: #SNAPSHOT#{serial:012d}
    if not sk.startswith(SK_SNAPSHOT):
        raise ValueError(f"Invalid snapshot SK: {sk}")
    return int(sk[len(SK_SNAPSHOT) :])


def get_table_definition(table_name: str) -> dict[str, Any]:
    """CreateTable arguments for the state table: on-demand, base keys plus GSI1."""
    return {
        "TableName": table_name,
        "BillingMode": "PAY_PER_REQUEST",
        "AttributeDefinitions": [
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
            {"AttributeName": "GSI1PK", "AttributeType": "S"},
            {"AttributeName": "GSI1SK", "AttributeType": "S"},
        ],
        "KeySchema": [
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": GSI1_NAME,
                "KeySchema": [
                    {"AttributeName": "GSI1PK", "KeyType": "HASH"},
                    {"AttributeName": "GSI1SK", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
    }
