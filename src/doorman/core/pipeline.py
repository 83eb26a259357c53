"""
Admission pipeline: an explicit, ordered list of guards for one route.

Guards run strictly in order and the first rejection ends evaluation, so a
request rejected by an earlier guard never consumes quota in a later one.
Paths on the allow-list skip every guard.
"""

from dataclasses import dataclass, field
from typing import Sequence

from doorman.core.keys import AdmissionRequest
from doorman.core.limiter import AdmissionDecision, Guard


@dataclass(frozen=True)
class PipelineOutcome:
    admitted: bool
    decision: AdmissionDecision | None = None
    decisions: tuple[AdmissionDecision, ...] = field(default_factory=tuple)
    bypassed: bool = False


class AdmissionPipeline:
    def __init__(
        self,
        name: str,
        guards: Sequence[Guard],
        bypass_paths: Sequence[str] = (),
    ) -> None:
        self.name = name
        self.guards: tuple[Guard, ...] = tuple(guards)
        self.bypass_paths: tuple[str, ...] = tuple(bypass_paths)

    def __repr__(self) -> str:
        names = ", ".join(guard.name for guard in self.guards)
        return f"AdmissionPipeline({self.name!r}, [{names}])"

    def bypasses(self, path: str) -> bool:
        """Exact match, or prefix match for allow-list entries ending in '/'."""
        for allowed in self.bypass_paths:
            if path == allowed:
                return True
            if allowed.endswith("/") and path.startswith(allowed):
                return True
        return False

    async def run(self, request: AdmissionRequest) -> PipelineOutcome:
        """
        Evaluate the guards in order.

        Returns the first rejecting decision when one rejects. When all
        admit, ``decision`` is the admitted one with the least quota left,
        which is what the response headers report.
        """
        if self.bypasses(request.path):
            return PipelineOutcome(admitted=True, bypassed=True)

        decisions: list[AdmissionDecision] = []
        for guard in self.guards:
            decision = await guard.check(request)
            if decision is None:
                continue
            decisions.append(decision)
            if not decision.admitted:
                return PipelineOutcome(
                    admitted=False,
                    decision=decision,
                    decisions=tuple(decisions),
                )

        tightest = min(decisions, key=lambda d: d.remaining, default=None)
        return PipelineOutcome(admitted=True, decision=tightest, decisions=tuple(decisions))
