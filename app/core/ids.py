import uuid

# row id prefixes; ids show up in logs and admin responses, the prefix tells them apart
PORTAL = "prt"
LISTING = "lst"
PUBLICATION = "pub"
JOB = "job"
SYNC_LOG = "slg"


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def id_default(prefix: str):
    """Column default producing a fresh prefixed id per row."""
    return lambda: gen_id(prefix)
