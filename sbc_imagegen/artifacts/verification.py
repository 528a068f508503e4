"""Artifact verification state machine.

States: SCANNING -> COMPLETE, or SCANNING -> INCOMPLETE -> CONFIRMED_CONTINUE
or ABORTED. COMPLETE and CONFIRMED_CONTINUE proceed to assembly; ABORTED is
terminal. Without a confirmation callback (non-interactive use) an
incomplete scan is aborted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sbc_imagegen.artifacts.locator import ArtifactScan, MissingArtifacts
from sbc_imagegen.errors import MissingArtifactsError
from sbc_imagegen.types import VerificationState

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[MissingArtifacts], bool]

_TRANSITIONS: dict[VerificationState, set[VerificationState]] = {
    VerificationState.SCANNING: {
        VerificationState.COMPLETE,
        VerificationState.INCOMPLETE,
    },
    VerificationState.INCOMPLETE: {
        VerificationState.CONFIRMED_CONTINUE,
        VerificationState.ABORTED,
    },
    VerificationState.COMPLETE: set(),
    VerificationState.CONFIRMED_CONTINUE: set(),
    VerificationState.ABORTED: set(),
}


@dataclass
class ArtifactVerification:
    """Outcome of verifying a scan.

    Attributes:
        state: Current state.
        missing: Missing artifacts reported by the scan.
        history: Every state visited, in order.
    """

    missing: MissingArtifacts
    state: VerificationState = VerificationState.SCANNING
    history: list[VerificationState] = field(
        default_factory=lambda: [VerificationState.SCANNING]
    )

    def advance(self, new_state: VerificationState) -> None:
        """Move to a new state.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid verification transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    @property
    def proceed(self) -> bool:
        """Whether assembly may start."""
        return self.state in (
            VerificationState.COMPLETE,
            VerificationState.CONFIRMED_CONTINUE,
        )

    def raise_if_aborted(self) -> None:
        """Raise MissingArtifactsError when verification was aborted."""
        if self.state is VerificationState.ABORTED:
            raise MissingArtifactsError(self.missing)


def verify_artifacts(
    scan: ArtifactScan,
    confirm: ConfirmCallback | None = None,
) -> ArtifactVerification:
    """Run the verification state machine over a scan.

    Args:
        scan: Result of locate_artifacts.
        confirm: Called with the missing artifacts when the scan is
            incomplete; returning True continues. None means abort.

    Returns:
        ArtifactVerification in a terminal state.
    """
    verification = ArtifactVerification(missing=scan.missing)

    if scan.complete:
        verification.advance(VerificationState.COMPLETE)
        return verification

    verification.advance(VerificationState.INCOMPLETE)

    if confirm is not None and confirm(scan.missing):
        logger.warning(
            "Continuing with %d missing artifact(s) at user request",
            len(scan.missing.items),
        )
        verification.advance(VerificationState.CONFIRMED_CONTINUE)
    else:
        logger.info("Aborting image creation.")
        verification.advance(VerificationState.ABORTED)

    return verification


__all__ = [
    "ArtifactVerification",
    "ConfirmCallback",
    "verify_artifacts",
]
