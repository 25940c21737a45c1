"""Approval of kubelet serving certificate requests.

With ``serverTLSBootstrap`` the kubelet asks the API server for a serving
certificate and waits for someone to approve it; until then ``kubectl logs``
and ``kubectl exec`` fail. Nothing in a single-node cluster approves these
requests, so kina does.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from loguru import logger

from kina.constants import CSR_POLL_INTERVAL, DEFAULT_CSR_TIMEOUT
from kina.kubectl import Kubectl

log = logger.bind(component="csr")


class CsrLoopState(StrEnum):
    IDLE = "idle"
    POLLING = "polling"
    APPROVED_SOME = "approved-some"
    TIMED_OUT_EMPTY = "timed-out-empty"


@dataclass(slots=True)
class CsrReport:
    state: CsrLoopState = CsrLoopState.IDLE
    approved: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    polls: int = 0

    def finish(self) -> CsrReport:
        self.state = CsrLoopState.APPROVED_SOME if self.approved else CsrLoopState.TIMED_OUT_EMPTY
        return self


class CsrApprover:
    def __init__(
        self,
        kubectl: Kubectl,
        *,
        interval: float = CSR_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._kubectl = kubectl
        self._interval = interval
        self._clock = clock
        self._sleep = sleep

    async def bootstrap(
        self, kubeconfig: Path | str, *, timeout: float = DEFAULT_CSR_TIMEOUT,
    ) -> CsrReport:
        """Poll and approve until ``timeout`` elapses.

        Requests keep arriving for a while after the node registers, so the
        loop never stops early, even after it has approved something.
        """
        report = CsrReport()
        await self._log_snapshot(kubeconfig, "before approval")

        report.state = CsrLoopState.POLLING
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            await self._sweep(kubeconfig, report)
            report.polls += 1
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(self._interval, remaining))

        report.finish()
        if report.approved:
            log.info("Approved {n} kubelet serving CSR(s)", n=len(report.approved))
        else:
            log.info("No kubelet serving CSRs were approved within {t}s", t=timeout)
            await self._log_snapshot(kubeconfig, "after approval window")
        return report

    async def approve_pending(self, kubeconfig: Path | str) -> CsrReport:
        """One sweep over the currently pending requests.

        There is no later poll to fall back on, so a failed listing raises
        CommandError carrying kubectl's output.
        """
        report = CsrReport(state=CsrLoopState.POLLING)
        await self._sweep(kubeconfig, report, check=True)
        report.polls = 1
        return report.finish()

    async def _sweep(self, kubeconfig: Path | str, report: CsrReport, *, check: bool = False) -> None:
        pending = await self._kubectl.pending_kubelet_csrs(kubeconfig, check=check)
        if pending is None:
            log.warning("Could not list CSRs, will retry")
            return

        for csr in pending:
            if csr.name in report.approved:
                continue
            result = await self._kubectl.approve_csr(kubeconfig, csr.name)
            if result.success:
                report.approved.append(csr.name)
                if csr.name in report.failed:
                    report.failed.remove(csr.name)
                log.info("Approved CSR {name}", name=csr.name)
            else:
                if csr.name not in report.failed:
                    report.failed.append(csr.name)
                log.warning("Failed to approve CSR {name}: {err}", name=csr.name, err=result.stderr.strip())

    async def _log_snapshot(self, kubeconfig: Path | str, when: str) -> None:
        csrs = await self._kubectl.list_csrs(kubeconfig)
        if csrs is None:
            log.debug("CSR snapshot {when}: unavailable", when=when)
            return
        log.debug(
            "CSR snapshot {when}: {csrs}",
            when=when,
            csrs=", ".join(f"{c.name}[{c.signer}:{c.status}]" for c in csrs) or "none",
        )
