"""Identity resolution: match free-text names and emails to directory identities.

Strategies run in order of decreasing confidence and the first hit wins:

1. exact email / principal name        -> EXACT
2. exact alias                         -> HIGH
3. exact display name                  -> HIGH
4. name permutation                    -> HIGH
5. fuzzy scan of the whole directory   -> tier derived from similarity

Confident matches are learned as aliases so the next lookup is a dict hit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from lifecycle_sync.conflicts import ConflictRegistry
from lifecycle_sync.identity_directory import Alias, Identity, IdentityDirectory
from lifecycle_sync.models import (
    AliasKind,
    ConflictType,
    DataConflict,
    MatchConfidence,
    MatchMethod,
    new_id,
)
from lifecycle_sync.name_matching import (
    DISCARD_THRESHOLD,
    clean_display_name,
    is_email,
    name_permutations,
    normalize,
    parse_name,
    similarity,
    structured_score,
    tier_for_similarity,
)

logger = logging.getLogger("lifecycle_sync.identity_resolver")

MAX_ALTERNATIVES = 3


@dataclass(frozen=True)
class MatchContext:
    data_source: Optional[str] = None
    role: Optional[str] = None
    application_id: Optional[str] = None
    application_name: Optional[str] = None
    create_conflict_on_no_match: bool = True
    min_confidence: MatchConfidence = MatchConfidence.MEDIUM


@dataclass(frozen=True)
class AlternativeMatch:
    identity: Identity
    confidence: MatchConfidence
    similarity: float
    reason: str


@dataclass(frozen=True)
class MatchResult:
    original_input: str
    matched: Optional[Identity] = None
    confidence: MatchConfidence = MatchConfidence.NO_MATCH
    similarity: float = 0.0
    method: MatchMethod = MatchMethod.NONE
    explanation: str = ""
    alternatives: tuple[AlternativeMatch, ...] = ()
    alias_learned: bool = False
    conflict: Optional[DataConflict] = None

    @property
    def is_match(self) -> bool:
        return self.matched is not None


@dataclass
class _Candidate:
    identity: Identity
    similarity: float
    tier: MatchConfidence = field(init=False)

    def __post_init__(self) -> None:
        self.tier = tier_for_similarity(self.similarity)


class IdentityResolver:
    def __init__(
        self,
        directory: IdentityDirectory,
        conflicts: Optional[ConflictRegistry] = None,
    ) -> None:
        self.directory = directory
        self.conflicts = conflicts

    def match_many(self, tokens: Iterable[str], context: Optional[MatchContext] = None) -> list[MatchResult]:
        """Match each token independently."""
        return [self.match(token, context) for token in tokens]

    def match(self, token: Optional[str], context: Optional[MatchContext] = None) -> MatchResult:
        context = context or MatchContext()
        original = token or ""
        normalized = normalize(original)
        if not normalized:
            return MatchResult(
                original_input=original,
                explanation="Input was empty or whitespace",
            )

        # 1. Exact email / UPN
        if is_email(normalized):
            identity = self.directory.find_by_email(normalized)
            if identity is not None:
                method = (
                    MatchMethod.EXACT_UPN
                    if normalize(identity.principal_name) == normalized
                    else MatchMethod.EXACT_EMAIL
                )
                return self._confident(
                    original, normalized, identity, MatchConfidence.EXACT, method,
                    f"Exact email/UPN match: {identity.principal_name}", context,
                )

        # 2. Known alias. Already learned, nothing to add.
        identity = self.directory.find_by_alias(normalized)
        if identity is not None:
            return MatchResult(
                original_input=original,
                matched=identity,
                confidence=MatchConfidence.HIGH,
                similarity=1.0,
                method=MatchMethod.EXACT_ALIAS,
                explanation=f"Matched via known alias: {original}",
            )

        # 3. Exact display name
        identity = self.directory.find_by_display_name(normalized)
        if identity is not None:
            return self._confident(
                original, normalized, identity, MatchConfidence.HIGH, MatchMethod.DISPLAY_NAME_EXACT,
                f"Exact display name match: {identity.display_name}", context,
            )

        # 4. Name permutations
        identity = self._permutation_match(original)
        if identity is not None:
            return self._confident(
                original, normalized, identity, MatchConfidence.HIGH, MatchMethod.NAME_PERMUTATION,
                f"Matched via name permutation: {identity.display_name}", context,
            )

        # 5. Fuzzy
        candidates = self._fuzzy_candidates(original, normalized)
        if candidates:
            return self._fuzzy_result(original, normalized, candidates, context)

        conflict = self._maybe_conflict(original, context)
        return MatchResult(
            original_input=original,
            explanation="No matching identity found in directory",
            conflict=conflict,
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _permutation_match(self, original: str) -> Optional[Identity]:
        for permutation in name_permutations(original):
            value = normalize(permutation)
            identity = (
                self.directory.find_by_display_name(value)
                or self.directory.find_by_given_family(value)
                or self.directory.find_by_alias(value, kind=AliasKind.NAME)
            )
            if identity is not None:
                return identity
        return None

    def _fuzzy_candidates(self, original: str, normalized: str) -> list[_Candidate]:
        input_given, input_family = parse_name(original)
        candidates: list[_Candidate] = []
        for identity in self.directory.all_identities():
            cleaned = clean_display_name(identity.display_name)
            parsed_given, parsed_family = parse_name(cleaned)
            given = identity.given_name or parsed_given
            family = identity.family_name or parsed_family

            structured = structured_score(input_given, input_family, given, family)

            unstructured = similarity(normalized, normalize(cleaned))
            if given and family:
                unstructured = max(
                    unstructured,
                    similarity(normalized, normalize(f"{given} {family}")),
                    similarity(normalized, normalize(f"{family} {given}")),
                )

            score = max(structured, unstructured)
            if score >= DISCARD_THRESHOLD:
                candidates.append(_Candidate(identity=identity, similarity=score))

        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates

    def _fuzzy_result(
        self,
        original: str,
        normalized: str,
        candidates: list[_Candidate],
        context: MatchContext,
    ) -> MatchResult:
        best = candidates[0]
        alternatives = tuple(
            AlternativeMatch(
                identity=c.identity,
                confidence=c.tier,
                similarity=c.similarity,
                reason=f"Similarity: {c.similarity:.0%}",
            )
            for c in candidates[1 : 1 + MAX_ALTERNATIVES]
        )

        if best.tier < context.min_confidence:
            conflict = self._maybe_conflict(original, context)
            return MatchResult(
                original_input=original,
                confidence=best.tier,
                similarity=best.similarity,
                method=MatchMethod.DISPLAY_NAME_FUZZY,
                explanation=(
                    f"Best fuzzy match below threshold ({best.similarity:.0%}): "
                    f"{best.identity.display_name}"
                ),
                alternatives=alternatives,
                conflict=conflict,
            )

        learned = False
        if best.tier >= MatchConfidence.HIGH:
            learned = self._learn_alias(original, normalized, best.identity, context)
        return MatchResult(
            original_input=original,
            matched=best.identity,
            confidence=best.tier,
            similarity=best.similarity,
            method=MatchMethod.DISPLAY_NAME_FUZZY,
            explanation=f"Fuzzy name match ({best.similarity:.0%} similar): {best.identity.display_name}",
            alternatives=alternatives,
            alias_learned=learned,
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _confident(
        self,
        original: str,
        normalized: str,
        identity: Identity,
        confidence: MatchConfidence,
        method: MatchMethod,
        explanation: str,
        context: MatchContext,
    ) -> MatchResult:
        learned = self._learn_alias(original, normalized, identity, context)
        return MatchResult(
            original_input=original,
            matched=identity,
            confidence=confidence,
            similarity=1.0,
            method=method,
            explanation=explanation,
            alias_learned=learned,
        )

    def _learn_alias(
        self, original: str, normalized: str, identity: Identity, context: MatchContext
    ) -> bool:
        # Values already held on the identity itself need no alias.
        own = {
            normalize(identity.principal_name),
            normalize(identity.email),
            normalize(identity.display_name),
        }
        if normalized in own or self.directory.find_by_alias(normalized) is not None:
            return False
        alias = Alias(
            identity_key=identity.key,
            kind=AliasKind.EMAIL if is_email(normalized) else AliasKind.NAME,
            value=normalized,
            original_value=original.strip(),
            discovered_from=context.data_source,
        )
        try:
            added = self.directory.add_alias(alias)
        except Exception as exc:
            logger.warning("Failed to record alias %r for %s: %s", normalized, identity.key, exc)
            return False
        if added:
            logger.info("Learned alias %r for %s", original.strip(), identity.display_name)
        return added

    def _maybe_conflict(self, original: str, context: MatchContext) -> Optional[DataConflict]:
        if (
            self.conflicts is None
            or not context.create_conflict_on_no_match
            or not context.application_id
        ):
            return None
        role = context.role or "Unknown"
        value_kind = AliasKind.EMAIL if is_email(normalize(original)) else AliasKind.NAME
        conflict = self.conflicts.add(DataConflict(
            id=new_id(),
            application_id=context.application_id,
            application_name=context.application_name or "Unknown",
            kind=ConflictType.USER_NOT_FOUND,
            description=(
                f"{role} '{original.strip()}' on {context.application_name or 'Unknown'} "
                "does not match any directory identity; the person may have left"
            ),
            source_a=context.data_source,
            value_a=original.strip(),
            role=role,
            value_kind=value_kind,
        ))
        if conflict is not None:
            logger.warning(
                "No identity match for %r (role: %s)", original.strip(), role,
                extra={"application": context.application_name},
            )
        return conflict
