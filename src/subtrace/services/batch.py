"""Multi-account batch runner.

Accounts share no mutable state except the detection store, so they run in
parallel up to a bound. Jobs for the same account (its mailbox, its bank
connection) run strictly in order on one worker, so one provider never sees
two concurrent scans.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Optional

from ..extractors.base import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class AccountJob:
    """One unit of work for an account, e.g. an email scan or a bank scan."""

    account_key: str
    name: str
    run: Callable[[], Any]


@dataclass
class AccountResult:
    """Results of an account's jobs, in submission order."""

    account_key: str
    results: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    failed_job: Optional[str] = None
    skipped: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None


def _run_account(
    account_key: str, jobs: list[AccountJob], cancel_token: Optional[CancellationToken]
) -> AccountResult:
    result = AccountResult(account_key=account_key)
    for index, job in enumerate(jobs):
        if cancel_token is not None and cancel_token.is_cancelled:
            result.skipped.extend(j.name for j in jobs[index:])
            break
        try:
            result.results[job.name] = job.run()
        except Exception as e:
            # Remaining jobs for this account are skipped; other accounts carry on
            logger.exception("Account %s job %s failed: %s", account_key, job.name, e)
            result.error = str(e)
            result.failed_job = job.name
            result.skipped.extend(j.name for j in jobs[index + 1 :])
            break
    return result


def run_account_scans(
    jobs: list[AccountJob],
    max_workers: int = 4,
    cancel_token: Optional[CancellationToken] = None,
) -> list[AccountResult]:
    """
    Run jobs grouped by account with bounded parallelism.

    Args:
        jobs: Jobs in the order they should run per account
        max_workers: Accounts processed concurrently
        cancel_token: Stops accounts from starting further jobs

    Returns:
        One AccountResult per account, in order of first appearance
    """
    if max_workers < 1:
        raise ValueError("max_workers must be >= 1")

    by_account: dict[str, list[AccountJob]] = {}
    for job in jobs:
        by_account.setdefault(job.account_key, []).append(job)

    if not by_account:
        return []

    results: dict[str, AccountResult] = {}
    workers = min(max_workers, len(by_account))
    logger.info("Running %d jobs for %d accounts on %d workers", len(jobs), len(by_account), workers)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="account") as executor:
        futures = {
            executor.submit(_run_account, key, account_jobs, cancel_token): key
            for key, account_jobs in by_account.items()
        }
        for future in as_completed(futures):
            key = futures[future]
            results[key] = future.result()

    return [results[key] for key in by_account]
