"""
Route guard: one access decision per (principal, route-or-feature).

Linear evaluation, no backtracking:
1. Public route -> ALLOW (not audited)
2. No principal -> DENY unauthenticated
3. Declared role / permission not held -> DENY insufficient_role
4. Compliance gate denies the feature -> DENY compliance_restricted
5. Policy engine denies the feature -> DENY policy_restricted
   (an allow may still carry restrictions)
6. Running experiment on the feature -> attach variant
7. Write exactly one audit record
8. Return the decision

Sub-evaluators fail open on their own (no rule, no policy -> allow). An
unexpected exception from any of them, or an unavailable role table, is
fail-closed here: DENY evaluation_error.

Usage:
    guard = AccessGuard(registry, route_table, policy_engine, compliance_gate,
                        targeting=targeting, audit_sink=sink)
    decision = guard.decide(principal, "/api/p2p/offers", request_context)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pew_access.compliance.gate import ComplianceGate
from pew_access.experiments.targeting import ExperimentTargeting
from pew_access.guard.decision import Decision, DecisionReason
from pew_access.guard.routes import RouteRule, RouteTable
from pew_access.platform.audit import AuditEventType, AuditRecord, AuditResult, AuditSink
from pew_access.platform.errors import EvaluationError, NotFoundError, ValidationError
from pew_access.platform.principal import (
    Principal,
    RequestContext,
    build_evaluation_context,
)
from pew_access.policies.engine import PolicyEngine
from pew_access.rbac.registry import RoleRegistry
from pew_access.rbac.resolver import PermissionResolver, ResolvedPermissions, has_permission

logger = logging.getLogger(__name__)


def _utc_hour(now: Optional[datetime]) -> int:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.hour
    return now.astimezone(timezone.utc).hour


@dataclass
class _Trail:
    """What the evaluation touched; goes into the audit record only."""
    role: Optional[str] = None
    role_fallback: bool = False
    consulted_policies: list[str] = field(default_factory=list)
    matched_policies: list[str] = field(default_factory=list)
    skipped_policies: list[str] = field(default_factory=list)
    compliance_rule: Optional[str] = None
    test_id: Optional[str] = None
    error_stage: Optional[str] = None

    def to_context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {
            "role": self.role,
            "matched_policies": list(self.matched_policies),
            "skipped_policies": list(self.skipped_policies),
        }
        if self.role_fallback:
            ctx["role_fallback"] = True
        if self.compliance_rule:
            ctx["compliance_rule"] = self.compliance_rule
        if self.test_id:
            ctx["test_id"] = self.test_id
        if self.error_stage:
            ctx["error_stage"] = self.error_stage
        return ctx


def _merge(*groups) -> tuple[str, ...]:
    return tuple(dict.fromkeys(r for group in groups for r in group))


class AccessGuard:
    """Composes resolver, compliance, policies and experiments into one decision."""

    def __init__(
        self,
        registry: RoleRegistry,
        routes: RouteTable,
        policy_engine: PolicyEngine,
        compliance_gate: ComplianceGate,
        targeting: Optional[ExperimentTargeting] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.registry = registry
        self.resolver = PermissionResolver(registry)
        self.routes = routes
        self.policy_engine = policy_engine
        self.compliance_gate = compliance_gate
        self.targeting = targeting
        self.audit_sink = audit_sink

    def decide(
        self,
        principal: Optional[Principal],
        target: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> Decision:
        if self.routes.is_public(target):
            return Decision.allow(DecisionReason.PUBLIC)

        rule = self.routes.resolve_target(target)
        trail = _Trail()
        try:
            decision = self._evaluate(principal, rule, context, now, trail)
        except EvaluationError as e:
            trail.error_stage = e.stage
            logger.error(
                "Access evaluation failed, denying",
                extra={
                    "target": target,
                    "user_id": principal.id if principal else None,
                    "stage": e.stage,
                },
                exc_info=True,
            )
            decision = Decision.deny(DecisionReason.EVALUATION_ERROR, feature=rule.feature)

        if not decision.allowed or rule.feature:
            self._audit(principal, target, rule, context, decision, trail)

        if not decision.allowed:
            logger.info(
                "Access denied",
                extra={
                    "target": target,
                    "user_id": principal.id if principal else None,
                    "reason": decision.reason.value,
                },
            )
        return decision

    # ------------------------------------------------------------------
    # Evaluation steps
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        principal: Optional[Principal],
        rule: RouteRule,
        context: Optional[RequestContext],
        now: Optional[datetime],
        trail: _Trail,
    ) -> Decision:
        if principal is None:
            return Decision.deny(
                DecisionReason.UNAUTHENTICATED,
                required_role=rule.require_role,
                feature=rule.feature,
            )

        resolved = self._stage("permissions", self.resolver.resolve, principal)
        trail.role = resolved.role_name
        trail.role_fallback = resolved.fallback

        denial = self._stage("permissions", self._check_requirements, resolved, rule)
        if denial is not None:
            return denial

        if not rule.feature:
            return Decision.allow()

        feature = rule.feature
        eval_context = build_evaluation_context(principal, context, resolved.role_name)
        # Time-of-day rules read "hour"; a caller-supplied hour wins
        eval_context.setdefault("hour", _utc_hour(now))

        compliance = self._stage(
            "compliance", self.compliance_gate.check_compliance, principal.id, feature, eval_context
        )
        trail.compliance_rule = compliance.rule_id
        if not compliance.allowed:
            return Decision.deny(
                DecisionReason.COMPLIANCE_RESTRICTED,
                restrictions=compliance.restrictions,
                feature=feature,
            )

        evaluation = self._stage("policy", self.policy_engine.evaluate, feature, eval_context)
        trail.consulted_policies = evaluation.consulted_policy_ids
        trail.matched_policies = evaluation.matched_policy_ids
        trail.skipped_policies = evaluation.skipped_policy_ids
        if not evaluation.allowed:
            return Decision.deny(
                DecisionReason.POLICY_RESTRICTED,
                restrictions=evaluation.restrictions,
                feature=feature,
            )

        variant = None
        if self.targeting is not None:
            assignment = self._assign_variant(feature, principal, eval_context, now)
            if assignment is not None:
                trail.test_id = assignment.test_id
                variant = assignment.variant

        return Decision.allow(
            restrictions=_merge(compliance.restrictions, evaluation.restrictions),
            variant=variant,
            feature=feature,
        )

    def _check_requirements(self, resolved: ResolvedPermissions, rule: RouteRule) -> Optional[Decision]:
        if rule.require_role and not self.resolver.has_role(
            resolved, rule.require_role, exact=rule.exact_role
        ):
            return Decision.deny(
                DecisionReason.INSUFFICIENT_ROLE,
                required_role=rule.require_role,
                feature=rule.feature,
            )
        if rule.require_permission and not has_permission(resolved, rule.require_permission):
            return Decision.deny(
                DecisionReason.INSUFFICIENT_ROLE,
                required_role=self._lowest_role_with(rule.require_permission),
                required_permission=rule.require_permission,
                feature=rule.feature,
            )
        return None

    def _lowest_role_with(self, permission: str) -> Optional[str]:
        for role in self.registry.list_roles():
            if role.has_permission(permission):
                return role.name
        return None

    def _assign_variant(self, feature, principal, eval_context, now):
        try:
            return self.targeting.assign_for_feature(feature, principal, eval_context, now=now)
        except (ValidationError, NotFoundError) as e:
            # A malformed experiment drops the variant, never the decision
            logger.warning(
                "Skipping experiment that could not be evaluated",
                extra={"feature": feature, "error_code": e.error_code, "error": e.message},
            )
            return None
        except Exception as e:
            raise EvaluationError("experiments", e) from e

    @staticmethod
    def _stage(stage: str, func, *args):
        try:
            return func(*args)
        except EvaluationError:
            raise
        except Exception as e:
            raise EvaluationError(stage, e) from e

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit(
        self,
        principal: Optional[Principal],
        target: str,
        rule: RouteRule,
        context: Optional[RequestContext],
        decision: Decision,
        trail: _Trail,
    ) -> None:
        if self.audit_sink is None:
            return
        context = context or RequestContext()
        audit_context = trail.to_context()
        audit_context["target"] = target
        audit_context["restrictions"] = list(decision.restrictions)
        if decision.variant:
            audit_context["variant"] = decision.variant
        if context.attributes:
            audit_context["request"] = dict(context.attributes)

        record = AuditRecord(
            type=AuditEventType.ACCESS_DECISION,
            result=AuditResult.ALLOWED if decision.allowed else AuditResult.DENIED,
            user_id=principal.id if principal else None,
            feature=rule.feature or target,
            reason=decision.reason.value,
            context=audit_context,
            policies=list(trail.consulted_policies),
            ip=context.ip,
            user_agent=context.user_agent,
            country=context.country or (principal.attributes.country if principal else None),
            region=context.region or (principal.attributes.region if principal else None),
        )
        try:
            self.audit_sink.write(record)
        except Exception:
            logger.error(
                "Audit sink raised, decision already made",
                extra={"audit_id": record.id, "target": target},
                exc_info=True,
            )
