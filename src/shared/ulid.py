"""ULID helpers.

Appointment ids, status event ids and generated idempotency keys are all
ULIDs, so they sort by creation time in logs and in the database.
"""

import ulid

ULID_LENGTH = 26


def generate_ulid() -> str:
    return str(ulid.new())
