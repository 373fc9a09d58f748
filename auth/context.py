"""
auth/context.py -- Per-request context threaded through the auth core.

The bearer dependency builds one RequestContext per request and stores it on
request.state; routes hand it to the service explicitly. There is no global
"current user" anywhere in the core.

deadline is a time.monotonic() instant. Store calls check it before starting
and again before committing, so an operation whose caller has already given
up is rolled back instead of silently completed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class RequestContext:
    account_id: int | None = None
    deadline: float | None = None

    @classmethod
    def with_timeout(cls, seconds: float | None, account_id: int | None = None) -> RequestContext:
        deadline = time.monotonic() + seconds if seconds else None
        return cls(account_id=account_id, deadline=deadline)

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def for_account(self, account_id: int) -> RequestContext:
        """Return a copy bound to an authenticated account, same deadline."""
        return replace(self, account_id=account_id)
