# ABOUTME: Unit tests for the health evaluator
# ABOUTME: Tests kind predicates, Missing/Unknown handling and worst-of aggregation

import pytest

from gitops_reconciler.health import aggregate, assess, evaluate, register_predicate
from gitops_reconciler.models import HealthStatus, LiveObject, ObjectKey


def obj(kind: str, spec: dict | None = None, status: dict | None = None, **metadata) -> LiveObject:
    body = {
        "apiVersion": "v1",
        "kind": kind,
        "metadata": {"name": "x", "namespace": "prod", **metadata},
        "spec": spec or {},
        "status": status or {},
    }
    return LiveObject.from_manifest(body)


@pytest.mark.unit
class TestWorkloadHealth:
    """Tests for replica-based workloads."""

    def test_deployment_partially_ready_is_progressing(self):
        """Test that 2 of 3 ready replicas is Progressing."""
        d = obj("Deployment", {"replicas": 3}, {"readyReplicas": 2, "updatedReplicas": 3})
        assert evaluate(d) is HealthStatus.PROGRESSING

    def test_deployment_fully_ready_is_healthy(self):
        """Test that 3 of 3 ready replicas is Healthy."""
        d = obj("Deployment", {"replicas": 3}, {"readyReplicas": 3, "updatedReplicas": 3})
        assert evaluate(d) is HealthStatus.HEALTHY

    def test_deployment_progress_deadline_is_degraded(self):
        """Test that an exceeded progress deadline is Degraded."""
        status = {
            "readyReplicas": 1,
            "conditions": [{"type": "Progressing", "status": "False", "reason": "ProgressDeadlineExceeded"}],
        }
        assert evaluate(obj("Deployment", {"replicas": 3}, status)) is HealthStatus.DEGRADED

    def test_generation_not_observed_is_progressing(self):
        """Test that a spec change not yet observed by the controller is Progressing."""
        d = obj("Deployment", {"replicas": 1}, {"readyReplicas": 1, "observedGeneration": 1}, generation=2)
        assert evaluate(d) is HealthStatus.PROGRESSING

    def test_default_replicas_is_one(self):
        """Test that a missing spec.replicas means one replica."""
        assert evaluate(obj("ReplicaSet", {}, {"readyReplicas": 1})) is HealthStatus.HEALTHY

    def test_statefulset_revision_rollout(self):
        """Test that a StatefulSet mid-rollout is Progressing."""
        status = {"readyReplicas": 2, "currentRevision": "web-1", "updateRevision": "web-2"}
        assert evaluate(obj("StatefulSet", {"replicas": 2}, status)) is HealthStatus.PROGRESSING

    def test_daemonset(self):
        """Test DaemonSet readiness against scheduled pods."""
        ready = {"desiredNumberScheduled": 3, "numberReady": 3, "updatedNumberScheduled": 3}
        assert evaluate(obj("DaemonSet", status=ready)) is HealthStatus.HEALTHY
        assert evaluate(obj("DaemonSet", status={**ready, "numberReady": 1})) is HealthStatus.PROGRESSING


@pytest.mark.unit
class TestOtherKinds:
    """Tests for non-workload predicates."""

    def test_pod_phases(self):
        """Test Pod phase and container state handling."""
        running = {"phase": "Running", "containerStatuses": [{"ready": True}]}
        crash = {"phase": "Running", "containerStatuses": [{"ready": False, "state": {"waiting": {"reason": "CrashLoopBackOff"}}}]}

        assert evaluate(obj("Pod", status=running)) is HealthStatus.HEALTHY
        assert evaluate(obj("Pod", status=crash)) is HealthStatus.DEGRADED
        assert evaluate(obj("Pod", status={"phase": "Pending"})) is HealthStatus.PROGRESSING
        assert evaluate(obj("Pod", status={"phase": "Failed"})) is HealthStatus.DEGRADED

    def test_job_conditions(self):
        """Test Job completion and failure conditions."""
        complete = {"conditions": [{"type": "Complete", "status": "True"}]}
        failed = {"conditions": [{"type": "Failed", "status": "True"}]}

        assert evaluate(obj("Job", status=complete)) is HealthStatus.HEALTHY
        assert evaluate(obj("Job", status=failed)) is HealthStatus.DEGRADED
        assert evaluate(obj("Job")) is HealthStatus.PROGRESSING

    def test_load_balancer_service(self):
        """Test that a LoadBalancer Service needs an ingress address."""
        lb = {"type": "LoadBalancer"}
        assert evaluate(obj("Service", lb)) is HealthStatus.PROGRESSING
        assert evaluate(obj("Service", lb, {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}})) is HealthStatus.HEALTHY
        assert evaluate(obj("Service", {"type": "ClusterIP"})) is HealthStatus.HEALTHY

    def test_pvc(self):
        """Test PersistentVolumeClaim phases."""
        assert evaluate(obj("PersistentVolumeClaim", status={"phase": "Bound"})) is HealthStatus.HEALTHY
        assert evaluate(obj("PersistentVolumeClaim", status={"phase": "Pending"})) is HealthStatus.PROGRESSING

    def test_kind_without_predicate_is_healthy(self):
        """Test that a present object of an unknown kind is Healthy."""
        assert evaluate(obj("ConfigMap")) is HealthStatus.HEALTHY

    def test_absent_object_is_missing(self):
        """Test that an object absent from live state is Missing."""
        assert evaluate(None) is HealthStatus.MISSING

    def test_malformed_status_is_unknown(self):
        """Test that a predicate crashing on bad data yields Unknown."""
        d = obj("Deployment", {"replicas": "three"}, {"readyReplicas": 1})
        assert evaluate(d) is HealthStatus.UNKNOWN

    def test_register_predicate(self):
        """Test that custom kinds can register their own predicate."""

        @register_predicate("Widget")
        def widget_health(o: LiveObject) -> HealthStatus:
            return HealthStatus.DEGRADED if o.status.get("broken") else HealthStatus.HEALTHY

        assert evaluate(obj("Widget", status={"broken": True})) is HealthStatus.DEGRADED


@pytest.mark.unit
class TestAggregation:
    """Tests for worst-of aggregation."""

    def test_worst_of(self):
        """Test the severity order Degraded > Progressing > Missing > Unknown > Healthy."""
        assert aggregate([HealthStatus.HEALTHY, HealthStatus.UNKNOWN]) is HealthStatus.UNKNOWN
        assert aggregate([HealthStatus.UNKNOWN, HealthStatus.MISSING]) is HealthStatus.MISSING
        assert aggregate([HealthStatus.MISSING, HealthStatus.PROGRESSING]) is HealthStatus.PROGRESSING
        assert aggregate([HealthStatus.PROGRESSING, HealthStatus.DEGRADED]) is HealthStatus.DEGRADED

    def test_empty_is_healthy(self):
        """Test that an application tracking nothing is Healthy."""
        assert aggregate([]) is HealthStatus.HEALTHY

    def test_assess(self):
        """Test per-object and aggregate health for tracked keys."""
        ready = obj("Deployment", {"replicas": 1}, {"readyReplicas": 1})
        missing = ObjectKey("ConfigMap", "prod", "gone")

        per_object, overall = assess([ready.key, missing], {ready.key: ready})

        assert per_object == {ready.key: HealthStatus.HEALTHY, missing: HealthStatus.MISSING}
        assert overall is HealthStatus.MISSING
