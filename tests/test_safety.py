"""Tests for safety modules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import make_contract
from delegator.models.capabilities import ResourceRequirements, TLPLevel
from delegator.models.contracts import (
    ContractMetadata,
    FirebreakAction,
    HumanReviewFirebreak,
    MaxDepthFirebreak,
    PermissionToken,
    ResourceLimitFirebreak,
    TimeoutFirebreak,
    TLPEscalationFirebreak,
)
from delegator.safety import check_firebreaks, check_permission_token, evaluate_firebreak

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestPermissionToken:
    """Test permission token validation."""

    def test_missing_token_passes(self) -> None:
        """A contract without a token carries no delegated authority."""
        result = check_permission_token(None)

        assert result.passed is True
        assert result.violation is None
        assert result.action == "continue"

    def test_valid_token(self) -> None:
        """Test a scoped, unexpired token."""
        token = PermissionToken(
            token_id="tok-1",
            scopes=["repo"],
            actions=["read"],
            resources=["src/"],
            expires_at=NOW + timedelta(hours=1),
        )
        assert check_permission_token(token, now=NOW).passed is True

    def test_expired_token(self) -> None:
        """Test expiry at exactly the reference time."""
        token = PermissionToken(
            token_id="tok-1",
            scopes=["repo"],
            actions=["read"],
            resources=["src/"],
            expires_at=NOW,
        )
        result = check_permission_token(token, now=NOW)

        assert result.passed is False
        assert result.violation == "Permission token expired"
        assert result.action == "halt"

    def test_lists_every_problem(self) -> None:
        """Test that all token problems are reported together."""
        result = check_permission_token(PermissionToken(token_id="tok-1"), now=NOW)

        assert result.passed is False
        assert result.violation.split("; ") == [
            "No permission scopes granted",
            "No permitted actions specified",
            "No permitted resources specified",
        ]


class TestFirebreaks:
    """Test firebreak evaluation."""

    def test_depth_below_threshold(self) -> None:
        """Test depth under the limit."""
        contract = make_contract(metadata=ContractMetadata(delegation_depth=2))
        assert evaluate_firebreak(MaxDepthFirebreak(threshold=3), contract, 0) is None

    def test_depth_at_threshold(self) -> None:
        """Test that reaching the threshold trips the firebreak."""
        contract = make_contract(metadata=ContractMetadata(delegation_depth=3))
        violation = evaluate_firebreak(MaxDepthFirebreak(threshold=3), contract, 0)

        assert violation is not None
        assert violation.reason == "Delegation depth 3 exceeds firebreak limit 3"
        assert violation.threshold == 3
        assert violation.actual == 3

    def test_tlp_within_limit(self) -> None:
        """Test a classification at the firebreak level."""
        contract = make_contract(tlp_classification=TLPLevel.AMBER)
        firebreak = TLPEscalationFirebreak(max_level=TLPLevel.AMBER)
        assert evaluate_firebreak(firebreak, contract, 0) is None

    def test_tlp_escalation(self) -> None:
        """Test a classification above the firebreak level."""
        contract = make_contract(tlp_classification=TLPLevel.RED)
        violation = evaluate_firebreak(TLPEscalationFirebreak(TLPLevel.GREEN), contract, 0)

        assert violation is not None
        assert violation.reason.startswith("TLP escalation: ")
        assert violation.to_dict()["actual"] == "TLP:RED"

    def test_timeout(self) -> None:
        """Test estimated duration against the timeout firebreak."""
        contract = make_contract()
        firebreak = TimeoutFirebreak(threshold_ms=1000)

        assert evaluate_firebreak(firebreak, contract, 1000) is None
        violation = evaluate_firebreak(firebreak, contract, 1001)
        assert violation.reason == "Estimated time 1001ms exceeds firebreak limit 1000ms"

    def test_resource_limit(self) -> None:
        """Test requested resources against the resource firebreak."""
        firebreak = ResourceLimitFirebreak(threshold=512, resource="memory_mb")

        assert evaluate_firebreak(firebreak, make_contract(), 0) is None
        contract = make_contract(resource_requirements=ResourceRequirements(memory_mb=1024))
        violation = evaluate_firebreak(firebreak, contract, 0)
        assert violation is not None
        assert violation.actual == 1024

    def test_human_review(self) -> None:
        """Test that human review blocks unless configured to halt only."""
        contract = make_contract()

        violation = evaluate_firebreak(HumanReviewFirebreak(), contract, 0)
        assert violation.reason == "Human review firebreak requires manual approval"
        assert evaluate_firebreak(HumanReviewFirebreak(FirebreakAction.HALT), contract, 0) is None

    def test_first_violation_wins(self) -> None:
        """Test that checking stops at the first tripped firebreak."""
        contract = make_contract(
            tlp_classification=TLPLevel.RED,
            metadata=ContractMetadata(delegation_depth=4),
            firebreaks=[
                TimeoutFirebreak(threshold_ms=10_000),
                MaxDepthFirebreak(threshold=2, action=FirebreakAction.ESCALATE),
                TLPEscalationFirebreak(TLPLevel.CLEAR),
            ],
        )
        result = check_firebreaks(contract, 500)

        assert result.passed is False
        assert result.action == "escalate"
        assert len(result.details) == 1
        assert "depth" in result.violation

    def test_no_firebreaks(self) -> None:
        """Test a contract without firebreaks."""
        assert check_firebreaks(make_contract(), 10**9).passed is True
