from __future__ import annotations

import pytest
from fakes import KUBECTL, Clock, FakeHost, fail, ok

from kina.constants import KUBELET_SERVING_SIGNER
from kina.core.exceptions import CommandError
from kina.csr import CsrApprover, CsrLoopState
from kina.kubectl import CsrRecord, Kubectl, parse_csr_table
from kina.process import ExecResult

pytestmark = [pytest.mark.unit]

KUBECONFIG = "/tmp/.kube/demo"


class ScriptedKubectl:
    """Serves CSRs that appear on a given poll and stay pending until approved."""

    def __init__(
        self, appear_at: dict[str, int], *,
        reject: frozenset[str] = frozenset(), unreachable: frozenset[int] = frozenset(),
    ) -> None:
        self.appear_at = appear_at
        self.reject = reject
        self.unreachable = unreachable
        self.approved: list[str] = []
        self.approved_on: dict[str, int] = {}
        self.polls = 0
        self.listings = 0

    async def list_csrs(self, kubeconfig):
        self.listings += 1
        return []

    async def pending_kubelet_csrs(self, kubeconfig, *, check: bool = False):
        self.polls += 1
        if self.polls in self.unreachable:
            if check:
                fail("The connection to the server was refused").check("kubectl get csr")
            return None
        return [
            CsrRecord(name, KUBELET_SERVING_SIGNER, "Pending")
            for name, poll in self.appear_at.items()
            if poll <= self.polls and name not in self.approved
        ]

    async def approve_csr(self, kubeconfig, name: str) -> ExecResult:
        if name in self.reject:
            return fail("Forbidden: user cannot approve")
        self.approved.append(name)
        self.approved_on[name] = self.polls
        return ok()


def _approver(kubectl, clock: Clock, interval: float = 5.0) -> CsrApprover:
    return CsrApprover(kubectl, interval=interval, clock=clock, sleep=clock.sleep)


class TestBootstrapLoop:
    @pytest.mark.asyncio
    async def test_late_request_is_approved_on_next_poll(self):
        kubectl = ScriptedKubectl({"csr-a": 3})
        clock = Clock()

        report = await _approver(kubectl, clock).bootstrap(KUBECONFIG, timeout=60)

        assert report.approved == ["csr-a"]
        assert kubectl.approved_on["csr-a"] <= 4
        assert report.state is CsrLoopState.APPROVED_SOME

    @pytest.mark.asyncio
    async def test_keeps_polling_until_timeout(self):
        kubectl = ScriptedKubectl({"csr-a": 1, "csr-b": 9})
        clock = Clock()

        report = await _approver(kubectl, clock).bootstrap(KUBECONFIG, timeout=60)

        assert report.polls == 12
        assert clock.now == 60
        assert report.approved == ["csr-a", "csr-b"]

    @pytest.mark.asyncio
    async def test_last_sleep_is_clipped_to_deadline(self):
        clock = Clock()
        await _approver(ScriptedKubectl({}), clock).bootstrap(KUBECONFIG, timeout=12)
        assert clock.sleeps == [5.0, 5.0, 2.0]

    @pytest.mark.asyncio
    async def test_empty_window(self):
        kubectl = ScriptedKubectl({})
        report = await _approver(kubectl, Clock()).bootstrap(KUBECONFIG, timeout=10)

        assert report.approved == []
        assert report.state is CsrLoopState.TIMED_OUT_EMPTY
        # before and after snapshots
        assert kubectl.listings == 2

    @pytest.mark.asyncio
    async def test_zero_timeout_never_polls(self):
        kubectl = ScriptedKubectl({"csr-a": 1})
        report = await _approver(kubectl, Clock()).bootstrap(KUBECONFIG, timeout=0)

        assert report.polls == 0
        assert report.state is CsrLoopState.TIMED_OUT_EMPTY

    @pytest.mark.asyncio
    async def test_failed_approval_does_not_stop_the_loop(self):
        kubectl = ScriptedKubectl({"csr-bad": 1, "csr-good": 2}, reject=frozenset({"csr-bad"}))

        report = await _approver(kubectl, Clock()).bootstrap(KUBECONFIG, timeout=20)

        assert report.approved == ["csr-good"]
        assert report.failed == ["csr-bad"]

    @pytest.mark.asyncio
    async def test_repeated_failure_is_reported_once(self):
        kubectl = ScriptedKubectl({"csr-bad": 1}, reject=frozenset({"csr-bad"}))

        report = await _approver(kubectl, Clock()).bootstrap(KUBECONFIG, timeout=60)

        assert report.polls == 12
        assert report.failed == ["csr-bad"]

    @pytest.mark.asyncio
    async def test_listing_failure_is_retried(self):
        kubectl = ScriptedKubectl({"csr-a": 1}, unreachable=frozenset({1, 2}))

        report = await _approver(kubectl, Clock()).bootstrap(KUBECONFIG, timeout=20)

        assert report.approved == ["csr-a"]
        assert kubectl.approved_on["csr-a"] == 3


class TestApprovePending:
    @pytest.mark.asyncio
    async def test_single_sweep(self):
        kubectl = ScriptedKubectl({"csr-a": 1, "csr-b": 2})
        clock = Clock()

        report = await _approver(kubectl, clock).approve_pending(KUBECONFIG)

        assert report.polls == 1
        assert report.approved == ["csr-a"]
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_unreachable_api_raises(self):
        kubectl = ScriptedKubectl({"csr-a": 1}, unreachable=frozenset({1}))

        with pytest.raises(CommandError, match="connection to the server was refused"):
            await _approver(kubectl, Clock()).approve_pending(KUBECONFIG)

        assert kubectl.approved == []

    @pytest.mark.asyncio
    async def test_failed_listing_carries_kubectl_output(self, host: FakeHost, kubectl: Kubectl):
        host.script(KUBECTL, "--kubeconfig", KUBECONFIG, "get", "csr",
                    result=fail("error: You must be logged in to the server (Unauthorized)"))

        with pytest.raises(CommandError, match="Unauthorized") as info:
            await CsrApprover(kubectl, interval=0).approve_pending(KUBECONFIG)

        assert info.value.context == "kubectl get csr"

    @pytest.mark.asyncio
    async def test_only_pending_kubelet_serving_requests(self, host: FakeHost, kubectl: Kubectl):
        host.csrs = {
            "csr-serving": (KUBELET_SERVING_SIGNER, "<none>"),
            "csr-client": ("kubernetes.io/kube-apiserver-client-kubelet", "<none>"),
            "csr-done": (KUBELET_SERVING_SIGNER, "Approved"),
        }

        report = await CsrApprover(kubectl, interval=0).approve_pending(KUBECONFIG)

        assert report.approved == ["csr-serving"]
        assert host.csrs["csr-serving"][1] == "Approved"
        assert host.csrs["csr-client"][1] == "<none>"


class TestParseCsrTable:
    def test_rows(self):
        records = parse_csr_table(
            "csr-7xk2p   kubernetes.io/kubelet-serving   <none>\n"
            "csr-9qrtz   kubernetes.io/kube-apiserver-client-kubelet   Approved\n"
            "\n"
        )
        assert records == [
            CsrRecord("csr-7xk2p", KUBELET_SERVING_SIGNER, "<none>"),
            CsrRecord("csr-9qrtz", "kubernetes.io/kube-apiserver-client-kubelet", "Approved"),
        ]
        assert records[0].pending and records[0].kubelet_serving
        assert not records[1].pending
