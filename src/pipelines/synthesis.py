"""
Requirement synthesis: turns a cluster and its analysis into a structured
requirement (title, user story, acceptance criteria) on the premium tier.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import argparse
import logging
import re

import pydantic

from src.agents.llm_agent import parse_json_object
from src.agents.router import LLMRouter
from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import (
    CircuitOpenError,
    FatalConfigError,
    JobCancelledError,
    MalformedOutputError,
    PipelineError,
    TransientProviderError,
    ValidationError,
)
from src.models.schemas import (
    AnalysisResult,
    Cluster,
    FeedbackItem,
    OperatorTicket,
    Requirement,
    RequirementStatus,
    SynthesisTemplate,
    TicketQueue,
    utcnow,
)
from src.pipelines.analysis import ClusterAnalyzer

logger = logging.getLogger(__name__)

DONE = (RequirementStatus.SYNTHESIZED, RequirementStatus.EXPORTED)

USER_STORY = re.compile(r"^\s*As an?\s+.+?\bI want\b.+?\bso that\b.+", re.IGNORECASE | re.DOTALL)

# Member excerpts included in the prompt
MAX_SAMPLES = 10
SAMPLE_CHARS = 300

STYLE_GUIDANCE = {
    "user-story": "Frame the requirement as a product feature request.",
    "bug-report": "Frame the requirement as a defect to fix; acceptance criteria describe the expected behavior.",
}


def build_template(config: Settings) -> SynthesisTemplate:
    """Template options from settings. An unknown style is a configuration error."""
    try:
        return SynthesisTemplate(
            style=config.synthesis_style,
            max_acceptance_criteria=config.synthesis_max_acceptance_criteria,
            tone=config.synthesis_tone,
        )
    except pydantic.ValidationError as e:
        raise FatalConfigError(f"Invalid synthesis template: {e}") from e


@dataclass
class BatchResult:
    synthesized: List[str] = field(default_factory=list)
    review: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return len(self.synthesized) + len(self.review) + len(self.failed)


class RequirementSynthesizer:
    """Synthesizes one requirement per cluster."""

    def __init__(
        self,
        config: Settings,
        store: CanonicalStore,
        router: Optional[LLMRouter] = None,
        template: Optional[SynthesisTemplate] = None,
        analyzer: Optional[ClusterAnalyzer] = None,
    ):
        self.config = config
        self.store = store
        self.template = template or build_template(config)
        if self.template.style not in STYLE_GUIDANCE:
            raise FatalConfigError(f"Unknown synthesis style '{self.template.style}'")
        self.router = router or LLMRouter(config, store)
        self.analyzer = analyzer or ClusterAnalyzer(config, store, self.router)

    # -- prompts ----------------------------------------------------------
    def build_messages(self, cluster: Cluster, members: List[FeedbackItem],
                       analysis: AnalysisResult, strict: bool = False) -> List[dict]:
        samples = sorted(members, key=lambda m: m.id)[:MAX_SAMPLES]
        feedback = "\n".join(f"{i+1}. {m.content[:SAMPLE_CHARS]}" for i, m in enumerate(samples))
        themes = ", ".join(sorted(analysis.themes)) or "none identified"
        limit = self.template.max_acceptance_criteria

        prompt = f"""You are a product manager turning customer feedback into a requirement.
{STYLE_GUIDANCE[self.template.style]} Use a {self.template.tone} tone.

The feedback below comes from {len(members)} customers reporting the same thing.
Themes: {themes}
Average sentiment: {analysis.sentiment:+.2f}

Sample feedback:
{feedback}

Return ONLY a JSON object with:
- "title": a concise requirement title
- "userStory": one sentence of the form "As a <user>, I want <capability> so that <benefit>"
- "acceptanceCriteria": an ordered array of at most {limit} testable criteria

Response:"""

        if strict:
            prompt += (
                "\n\nYour previous reply was rejected. Reply with the JSON object only, no markdown "
                "and no prose. Every key is required, userStory must start with \"As a\" and contain "
                "\"I want\" and \"so that\", and acceptanceCriteria must contain at least one non-empty string."
            )
        return [{"role": "user", "content": prompt}]

    def validate(self, response: str) -> Dict[str, Any]:
        """
        Validate a synthesis reply.

        Raises:
            MalformedOutputError: Missing title, bad user story or empty criteria
        """
        data = parse_json_object(response)

        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise MalformedOutputError("Requirement title is missing", raw_output=response)

        user_story = data.get("userStory", data.get("user_story"))
        if not isinstance(user_story, str) or not USER_STORY.match(user_story):
            raise MalformedOutputError("userStory is not 'As a ... I want ... so that ...'", raw_output=response)

        criteria = data.get("acceptanceCriteria", data.get("acceptance_criteria"))
        if not isinstance(criteria, list) or not criteria:
            raise MalformedOutputError("acceptanceCriteria must be a non-empty list", raw_output=response)
        if not all(isinstance(c, str) and c.strip() for c in criteria):
            raise MalformedOutputError("acceptanceCriteria entries must be non-empty strings", raw_output=response)

        return {
            "title": title.strip(),
            "userStory": user_story.strip(),
            "acceptanceCriteria": [c.strip() for c in criteria][:self.template.max_acceptance_criteria],
        }

    # -- synthesis --------------------------------------------------------
    def synthesize_cluster(self, cluster_id: str, retry_review: bool = False) -> Requirement:
        """
        Synthesize the requirement for a cluster.

        Returns the existing requirement unchanged when it was already
        synthesized for exactly the current members, or when it sits in
        manual review for them and ``retry_review`` is not set.

        Raises:
            ValidationError: Unknown or empty cluster
            JobCancelledError: The workspace was deleted
            TransientProviderError / CircuitOpenError: Premium tier unavailable
                after retries (requirement stays draft with a failure reason)
        """
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise ValidationError(f"Cluster {cluster_id} does not exist")
        if self.store.is_workspace_deleted(cluster.workspace_id):
            raise JobCancelledError(f"Workspace {cluster.workspace_id} was deleted")

        requirement, cluster = self._prepare_draft(cluster_id)
        if requirement.status in DONE:
            logger.debug(f"Requirement {requirement.id} already covers cluster {cluster_id}")
            return requirement
        if requirement.status == RequirementStatus.REVIEW and not retry_review:
            logger.debug(f"Requirement {requirement.id} is awaiting manual review")
            return requirement

        # Membership snapshot; later changes are picked up by the next cycle
        snapshot = set(requirement.source_feedback_ids)
        members = self.store.get_feedback_items(sorted(snapshot))
        try:
            analysis = self.store.get_active_analysis(cluster.id) or self.analyzer.analyze_cluster(cluster.id)
            if analysis is None:
                def await_analysis(latest: Requirement) -> None:
                    latest.failure_reason = f"Analysis of cluster {cluster_id} is awaiting manual review"

                requirement, _ = self._settle(requirement, snapshot, await_analysis)
                logger.warning(f"Requirement {requirement.id} stays draft until cluster {cluster_id} is analyzed")
                return requirement
            outcome = self.router.synthesize(
                cluster,
                self.build_messages(cluster, members, analysis),
                self.build_messages(cluster, members, analysis, strict=True),
                self.validate,
                cluster.workspace_id,
            )
        except MalformedOutputError as e:
            return self._send_to_review(requirement, snapshot, str(e))
        except (TransientProviderError, CircuitOpenError, FatalConfigError) as e:
            def keep_draft(latest: Requirement) -> None:
                latest.failure_reason = f"{type(e).__name__}: {e}"

            self._settle(requirement, snapshot, keep_draft)
            logger.error(f"Synthesis of cluster {cluster_id} failed; requirement {requirement.id} stays draft: {e}")
            raise

        payload = outcome.payload
        # Analysis may have rescored the cluster since the draft was prepared
        cluster = self.store.get_cluster(cluster_id) or cluster

        def fill(latest: Requirement) -> None:
            latest.title = payload["title"]
            latest.user_story = payload["userStory"]
            latest.acceptance_criteria = payload["acceptanceCriteria"]
            latest.priority_score = cluster.priority_score
            latest.priority_bucket = cluster.priority_bucket
            latest.status = RequirementStatus.SYNTHESIZED
            latest.failure_reason = None

        requirement, applied = self._settle(requirement, snapshot, fill)
        if applied:
            logger.info(
                f"Synthesized requirement {requirement.id} for cluster {cluster_id} "
                f"({len(snapshot)} sources, priority {requirement.priority_bucket})"
            )
        return requirement

    def _settle(self, requirement: Requirement, snapshot: Set[str],
                apply: Callable[[Requirement], None]) -> Tuple[Requirement, bool]:
        """
        Apply a final update to the stored requirement under the cluster's
        requirement lock. A requirement that a concurrent run already finished,
        superseded or re-snapshotted is returned unchanged.
        """
        with self.store.lock(f"requirement:{requirement.cluster_id}"):
            latest = self.store.get_requirement(requirement.id) or requirement
            if latest.superseded_by is not None or latest.status in DONE:
                return latest, False
            if set(latest.source_feedback_ids) != snapshot:
                return latest, False
            apply(latest)
            latest.updated_at = utcnow()
            self.store.save_requirement(latest)
            return latest, True

    def _prepare_draft(self, cluster_id: str) -> Tuple[Requirement, Cluster]:
        """
        Current requirement if it can be reused, otherwise a new draft, plus
        the cluster as read under the requirement lock. The draft's
        source_feedback_ids are the membership snapshot for this run.
        """
        with self.store.lock(f"requirement:{cluster_id}"):
            cluster = self.store.get_cluster(cluster_id)
            snapshot = set(cluster.member_item_ids) if cluster else set()
            if not snapshot:
                raise ValidationError(f"Cluster {cluster_id} has no members")
            current = self.store.get_current_requirement(cluster.id)

            if current is not None and current.status in (RequirementStatus.DRAFT, RequirementStatus.REVIEW):
                if set(current.source_feedback_ids) != snapshot:
                    # Membership changed; retry without waiting for review
                    current.status = RequirementStatus.DRAFT
                current.source_feedback_ids = snapshot
                current.updated_at = utcnow()
                self.store.save_requirement(current)
                return current, cluster

            if current is not None and set(current.source_feedback_ids) == snapshot:
                return current, cluster

            draft = Requirement(
                cluster_id=cluster.id,
                workspace_id=cluster.workspace_id,
                source_feedback_ids=snapshot,
                priority_score=cluster.priority_score,
                priority_bucket=cluster.priority_bucket,
                status=RequirementStatus.DRAFT,
            )
            self.store.save_requirement(draft)
            if current is not None:
                current.superseded_by = draft.id
                current.updated_at = utcnow()
                self.store.save_requirement(current)
                logger.info(f"Requirement {current.id} superseded by {draft.id}; cluster {cluster.id} membership changed")
            return draft, cluster

    def _send_to_review(self, requirement: Requirement, snapshot: Set[str], reason: str) -> Requirement:
        def review(latest: Requirement) -> None:
            latest.status = RequirementStatus.REVIEW
            latest.failure_reason = f"MalformedOutputError: {reason}"

        requirement, applied = self._settle(requirement, snapshot, review)
        if applied:
            self.store.add_ticket(OperatorTicket(
                queue=TicketQueue.MANUAL_REVIEW,
                entity_type="requirement",
                entity_id=requirement.id,
                workspace_id=requirement.workspace_id,
                reason=requirement.failure_reason,
            ))
            logger.warning(f"Requirement {requirement.id} sent to manual review: {reason}")
        return requirement

    # -- batch ------------------------------------------------------------
    def synthesize_batch(self, cluster_ids: List[str], limit: Optional[int] = None,
                         retry_review: bool = False) -> BatchResult:
        """
        Synthesize up to ``limit`` clusters. One cluster's failure does not
        abort the batch; a deleted workspace stops it.
        """
        limit = self.config.synthesis_batch_size if limit is None else limit
        result = BatchResult()

        for cluster_id in cluster_ids[:limit]:
            try:
                requirement = self.synthesize_cluster(cluster_id, retry_review=retry_review)
            except JobCancelledError as e:
                logger.info(f"Stopping synthesis batch: {e}")
                result.cancelled = True
                break
            except PipelineError as e:
                result.failed[cluster_id] = f"{type(e).__name__}: {e}"
                continue

            if requirement.status in (RequirementStatus.REVIEW, RequirementStatus.DRAFT):
                # Draft here means the cluster analysis itself awaits review
                result.review.append(cluster_id)
            else:
                result.synthesized.append(cluster_id)

        logger.info(
            f"Synthesis batch complete: {len(result.synthesized)} synthesized, "
            f"{len(result.review)} in review, {len(result.failed)} failed"
        )
        return result

    def pending_cluster_ids(self, workspace_id: str, include_review: bool = False) -> List[str]:
        """Clusters of a workspace, highest priority first, whose requirement is missing or out of date."""
        pending = []
        clusters = sorted(self.store.list_clusters(workspace_id), key=lambda c: -c.priority_score)
        for cluster in clusters:
            if not cluster.member_item_ids:
                continue
            current = self.store.get_current_requirement(cluster.id)
            if current is None or current.status == RequirementStatus.DRAFT:
                pending.append(cluster.id)
            elif current.status == RequirementStatus.REVIEW:
                if include_review:
                    pending.append(cluster.id)
            elif set(current.source_feedback_ids) != cluster.member_item_ids:
                pending.append(cluster.id)
        return pending

    def rerun_review(self, workspace_id: str, limit: Optional[int] = None) -> BatchResult:
        """Re-run synthesis for clusters whose requirement sits in manual review."""
        cluster_ids = [
            r.cluster_id for r in self.store.list_requirements(workspace_id, RequirementStatus.REVIEW.value)
            if r.superseded_by is None
        ]
        return self.synthesize_batch(cluster_ids, limit, retry_review=True)


def main():
    """Main entry point for batch requirement synthesis."""
    from src.data_access.postgres_store import PostgresStore

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    parser = argparse.ArgumentParser(description='Synthesize requirements for the clusters of a workspace.')
    parser.add_argument('--workspace', required=True, help='Workspace id')
    parser.add_argument('--limit', type=int, help='Maximum number of clusters to synthesize')
    parser.add_argument('--include-review', action='store_true',
                        help='Also re-run clusters whose requirement is in manual review')
    args = parser.parse_args()

    config = Settings()
    store = PostgresStore(config)
    try:
        synthesizer = RequirementSynthesizer(config, store)
        cluster_ids = synthesizer.pending_cluster_ids(args.workspace, include_review=args.include_review)
        result = synthesizer.synthesize_batch(cluster_ids, args.limit, retry_review=args.include_review)
    finally:
        store.close()

    print("\n" + "="*60)
    print("REQUIREMENT SYNTHESIS RESULTS")
    print("="*60)
    print(f"Clusters pending: {len(cluster_ids)}")
    print(f"Synthesized: {len(result.synthesized)}")
    print(f"Sent to manual review: {len(result.review)}")
    print(f"Failed: {len(result.failed)}")
    for cluster_id, reason in result.failed.items():
        print(f"  {cluster_id}: {reason}")
    if result.cancelled:
        print("Batch stopped: workspace deleted")
    print("="*60)


if __name__ == "__main__":
    main()
