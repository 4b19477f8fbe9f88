import unittest

from src.cluster.store import StoreError
from src.common import names
from src.common.errors import ReconcileError
from src.common.readiness import ReadyFlag
from src.controller.reconciler import (
    FEATURE_NOT_ACTIVE,
    FEATURE_NOT_ACTIVE_MESSAGE,
    IntrusionDetectionReconciler,
    ReconcileState,
)
from src.resolver.preconditions import PreconditionResolver
from tests import cluster_fixtures as fx

ID_NAMESPACE = names.INTRUSION_DETECTION_NAMESPACE


def _ready_flag(ready: bool = True) -> ReadyFlag:
    flag = ReadyFlag()
    if ready:
        flag.mark_ready()
    return flag


class ReconcilerTestCase(unittest.TestCase):
    def make(self, objects, *, license_ready: bool = True, dpi_ready: bool = True, **resolver_kwargs):
        self.store = fx.CountingStore(objects)
        self.status = fx.RecordingStatus()
        resolver = PreconditionResolver(self.store, **resolver_kwargs) if resolver_kwargs else None
        self.reconciler = IntrusionDetectionReconciler(
            self.store,
            self.status,
            _ready_flag(license_ready),
            _ready_flag(dpi_ready),
            resolver=resolver,
        )
        return self.reconciler

    def controller(self):
        return fx.find(self.store, "apps/v1", "Deployment", ID_NAMESPACE, names.CONTROLLER_NAME)

    def installer(self):
        return fx.find(self.store, "batch/v1", "Job", ID_NAMESPACE, names.INSTALLER_JOB_NAME)


class HealthyPassTests(ReconcilerTestCase):
    def test_standalone_pass_is_healthy(self) -> None:
        result = self.make(fx.ready_cluster()).reconcile()
        self.assertEqual(result.state, ReconcileState.HEALTHY)
        self.assertEqual(result.requeue_after, 0)
        self.assertEqual(
            self.reconciler.states,
            [
                ReconcileState.IDLE,
                ReconcileState.GATING,
                ReconcileState.RESOLVING,
                ReconcileState.COMPOSING,
                ReconcileState.APPLYING,
                ReconcileState.HEALTHY,
            ],
        )
        self.assertEqual(self.status.degraded_calls, [])
        self.assertEqual(self.status.cleared, 1)
        self.assertIsNotNone(self.controller())
        self.assertIsNotNone(self.installer())
        for mode in ("training", "detection"):
            template = fx.find(self.store, "v1", "PodTemplate", ID_NAMESPACE, f"tigera.io.detectors.{mode}")
            self.assertIsNotNone(fx.container(template, names.AD_JOB_CONTAINER))
        api = fx.find(self.store, "apps/v1", "Deployment", ID_NAMESPACE, names.AD_API_NAME)
        self.assertIsNotNone(fx.container(api, names.AD_API_NAME))
        self.assertIn(
            ("apps/v1", "Deployment", ID_NAMESPACE, names.CONTROLLER_NAME), self.status.deployments
        )

    def test_second_pass_issues_no_writes(self) -> None:
        reconciler = self.make(fx.ready_cluster())
        reconciler.reconcile()
        self.store.reset_counts()
        result = reconciler.reconcile()
        self.assertEqual(result.state, ReconcileState.HEALTHY)
        self.assertEqual(self.store.creates, [])
        self.assertEqual(self.store.updates, [])
        self.assertEqual(self.store.deletes, [])

    def test_missing_resource_is_idle(self) -> None:
        objects = [o for o in fx.ready_cluster() if o["kind"] != names.INTRUSION_DETECTION_KIND]
        result = self.make(objects).reconcile()
        self.assertEqual(result.state, ReconcileState.IDLE)
        self.assertEqual(self.store.creates, [])
        self.assertEqual(self.status.degraded_calls, [])

    def test_registry_and_digest_from_installation_and_image_set(self) -> None:
        objects = fx.ready_cluster(
            installation_obj=fx.installation(registry="some.registry.org/", computed_registry="my-reg"),
            extra=[fx.image_set([("tigera/intrusion-detection-controller", "sha256:intrusiondetectionhash")])],
        )
        self.make(objects).reconcile()
        image = fx.container(self.controller(), names.CONTROLLER_CONTAINER)["image"]
        self.assertEqual(image, "some.registry.org/tigera/intrusion-detection-controller@sha256:intrusiondetectionhash")

    def test_every_image_pinned_by_digest_from_image_set(self) -> None:
        images = [
            ("tigera/intrusion-detection-controller", "sha256:controllerhash"),
            ("tigera/intrusion-detection-job-installer", "sha256:installerhash"),
            ("tigera/deep-packet-inspection", "sha256:dpihash"),
            ("tigera/anomaly_detection_jobs", "sha256:adjobshash"),
            ("tigera/anomaly-detection-api", "sha256:adapihash"),
        ]
        objects = fx.ready_cluster(extra=[fx.image_set(images), fx.deep_packet_inspection()])
        self.make(objects).reconcile()
        pinned = {
            fx.container(self.controller(), names.CONTROLLER_CONTAINER)["image"],
            fx.container(self.installer(), names.INSTALLER_CONTAINER)["image"],
            fx.container(
                fx.find(self.store, "apps/v1", "Deployment", ID_NAMESPACE, names.AD_API_NAME), names.AD_API_NAME
            )["image"],
            fx.container(
                fx.find(self.store, "apps/v1", "DaemonSet", names.DPI_NAMESPACE, names.DPI_NAME), names.DPI_NAME
            )["image"],
        }
        for mode in ("training", "detection"):
            template = fx.find(self.store, "v1", "PodTemplate", ID_NAMESPACE, f"tigera.io.detectors.{mode}")
            pinned.add(fx.container(template, names.AD_JOB_CONTAINER)["image"])
        for image, digest in images:
            self.assertIn(f"{image}@{digest}", {ref.split("/", 1)[1] for ref in pinned})


class GateTests(ReconcilerTestCase):
    def test_license_api_not_ready_defers(self) -> None:
        result = self.make(fx.ready_cluster(), license_ready=False).reconcile()
        self.assertEqual(result.state, ReconcileState.DEGRADED_DEFERRED)
        self.assertEqual(result.requeue_after, 0)
        self.assertEqual(self.status.degraded_calls, [("Waiting for LicenseKeyAPI to be ready", "")])
        self.assertEqual(self.store.creates, [])
        self.assertEqual(self.store.updates, [])

    def test_dpi_api_not_ready_defers(self) -> None:
        result = self.make(fx.ready_cluster(), dpi_ready=False).reconcile()
        self.assertEqual(result.state, ReconcileState.DEGRADED_DEFERRED)
        self.assertEqual(self.status.degraded_calls[0][0], "Waiting for DeepPacketInspection API to be ready")


class TopologyTests(ReconcilerTestCase):
    def test_managed_cluster_has_no_installer_and_no_degraded_status(self) -> None:
        objects = fx.ready_cluster(with_installer_secret=False, extra=[fx.management_cluster_connection()])
        result = self.make(objects).reconcile()
        self.assertEqual(result.state, ReconcileState.HEALTHY)
        self.assertIsNone(self.installer())
        self.assertEqual(len(self.status.degraded_calls), 0)

    def test_managed_cluster_removes_existing_installer(self) -> None:
        objects = fx.ready_cluster(extra=[fx.management_cluster_connection()])
        reconciler = self.make(objects)
        self.store.create(
            {
                "apiVersion": "batch/v1",
                "kind": "Job",
                "metadata": {"name": names.INSTALLER_JOB_NAME, "namespace": ID_NAMESPACE},
                "spec": {},
            }
        )
        reconciler.reconcile()
        self.assertIsNone(self.installer())

    def test_management_cluster_waits_for_installer_secret(self) -> None:
        objects = fx.ready_cluster(with_installer_secret=False, extra=[fx.management_cluster()])
        result = self.make(objects).reconcile()
        self.assertEqual(result.state, ReconcileState.DEGRADED_DEFERRED)
        self.assertEqual(result.requeue_after, 0)
        self.assertEqual(len(self.status.degraded_calls), 1)
        self.assertIsNone(self.controller())

    def test_conflicting_topology_is_fatal(self) -> None:
        objects = fx.ready_cluster(extra=[fx.management_cluster(), fx.management_cluster_connection()])
        with self.assertRaises(ReconcileError) as ctx:
            self.make(objects).reconcile()
        self.assertEqual(ctx.exception.reason, "Invalid cluster topology")
        self.assertEqual(self.reconciler.last_state, ReconcileState.DEGRADED_FATAL)


class LicenseTests(ReconcilerTestCase):
    def test_missing_license_requeues(self) -> None:
        result = self.make(fx.ready_cluster(with_license=False)).reconcile()
        self.assertEqual(result.state, ReconcileState.DEGRADED_DEFERRED)
        self.assertEqual(result.requeue_after, 10)
        self.assertEqual(self.status.degraded_calls[0][0], "License not found")

    def test_license_without_feature(self) -> None:
        result = self.make(fx.ready_cluster(features=["other-feature"])).reconcile()
        self.assertEqual(result.state, ReconcileState.FEATURE_INACTIVE)
        self.assertEqual(result.requeue_after, 0)
        self.assertEqual(self.status.degraded_calls, [(FEATURE_NOT_ACTIVE, FEATURE_NOT_ACTIVE_MESSAGE)])
        self.assertEqual(self.status.cleared, 0)
        self.assertEqual(self.store.creates, [])

    def test_losing_the_feature_removes_workloads(self) -> None:
        reconciler = self.make(fx.ready_cluster(extra=[fx.deep_packet_inspection()]))
        reconciler.reconcile()
        self.assertIsNotNone(self.controller())
        license_obj = self.store.get(names.CALICO_API_VERSION, names.LICENSE_KEY_KIND, None, names.LICENSE_KEY_NAME)
        license_obj["status"]["features"] = ["other-feature"]
        self.store.update(license_obj)

        result = reconciler.reconcile()
        self.assertEqual(result.state, ReconcileState.FEATURE_INACTIVE)
        self.assertIsNone(self.controller())
        self.assertIsNone(self.installer())
        self.assertIsNone(fx.find(self.store, "apps/v1", "Deployment", ID_NAMESPACE, names.AD_API_NAME))
        self.assertIsNone(fx.find(self.store, "apps/v1", "DaemonSet", names.DPI_NAMESPACE, names.DPI_NAME))
        self.assertIsNotNone(fx.find(self.store, "v1", "Namespace", None, ID_NAMESPACE))
        self.assertEqual(self.status.degraded_calls[-1], (FEATURE_NOT_ACTIVE, FEATURE_NOT_ACTIVE_MESSAGE))


class ComponentResourceTests(ReconcilerTestCase):
    def _persisted(self):
        cr = self.store.get(names.OPERATOR_API_VERSION, names.INTRUSION_DETECTION_KIND, None, names.INTRUSION_DETECTION_NAME)
        return cr["spec"]["componentResources"]

    def test_dpi_defaults_written_back(self) -> None:
        self.make(fx.ready_cluster()).reconcile()
        entries = self._persisted()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["componentName"], "DeepPacketInspection")
        requirements = entries[0]["resourceRequirements"]
        self.assertEqual(requirements["requests"], {"cpu": "100m", "memory": "100Mi"})
        self.assertEqual(requirements["limits"], {"cpu": "1", "memory": "1Gi"})

    def test_user_values_preserved(self) -> None:
        custom = {"limits": {"cpu": "2", "memory": "2Gi"}, "requests": {"cpu": "1", "memory": "1Gi"}}
        cr = fx.intrusion_detection([{"componentName": "DeepPacketInspection", "resourceRequirements": custom}])
        objects = fx.ready_cluster(intrusion_detection_obj=cr, extra=[fx.deep_packet_inspection()])
        self.make(objects).reconcile()
        self.assertEqual(self._persisted()[0]["resourceRequirements"], custom)
        daemonset = fx.find(self.store, "apps/v1", "DaemonSet", names.DPI_NAMESPACE, names.DPI_NAME)
        self.assertEqual(fx.container(daemonset, names.DPI_NAME)["resources"], custom)

    def test_removed_override_drops_resources_from_controller(self) -> None:
        override = {"limits": {"cpu": "3"}, "requests": {"cpu": "2"}}
        cr = fx.intrusion_detection([{"componentName": "IntrusionDetectionController", "resourceRequirements": override}])
        reconciler = self.make(fx.ready_cluster(intrusion_detection_obj=cr))
        reconciler.reconcile()
        self.assertEqual(fx.container(self.controller(), names.CONTROLLER_CONTAINER)["resources"], override)

        cr = self.store.get(names.OPERATOR_API_VERSION, names.INTRUSION_DETECTION_KIND, None, names.INTRUSION_DETECTION_NAME)
        cr["spec"]["componentResources"] = [
            entry for entry in cr["spec"]["componentResources"] if entry["componentName"] != "IntrusionDetectionController"
        ]
        self.store.update(cr)
        self.store.reset_counts()

        reconciler.reconcile()
        self.assertNotIn("resources", fx.container(self.controller(), names.CONTROLLER_CONTAINER))
        self.assertIn(("apps/v1", "Deployment", ID_NAMESPACE, names.CONTROLLER_NAME), self.store.updates)

    def test_invalid_resource_is_fatal(self) -> None:
        cr = fx.intrusion_detection([{"componentName": "Bogus"}])
        with self.assertRaises(ReconcileError) as ctx:
            self.make(fx.ready_cluster(intrusion_detection_obj=cr)).reconcile()
        self.assertEqual(ctx.exception.reason, "Invalid IntrusionDetection resource")
        self.assertEqual(self.store.updates, [])


class FailureTests(ReconcilerTestCase):
    def test_missing_installation_raises(self) -> None:
        objects = [o for o in fx.ready_cluster() if o["kind"] != names.INSTALLATION_KIND]
        with self.assertRaises(ReconcileError) as ctx:
            self.make(objects).reconcile()
        self.assertEqual(ctx.exception.reason, "Installation not found")
        self.assertEqual(self.status.degraded_calls[0][0], "Installation not found")

    def test_apply_failure_raises_after_attempting_everything(self) -> None:
        reconciler = self.make(fx.ready_cluster())
        self.store.fail_on[("Deployment", names.CONTROLLER_NAME)] = StoreError("admission denied")
        with self.assertRaises(ReconcileError) as ctx:
            reconciler.reconcile()
        self.assertEqual(
            ctx.exception.reason,
            f"Error creating or updating Deployment/{ID_NAMESPACE}/{names.CONTROLLER_NAME}",
        )
        self.assertEqual(ctx.exception.message, "admission denied")
        self.assertIsNotNone(fx.find(self.store, "apps/v1", "Deployment", ID_NAMESPACE, names.AD_API_NAME))
        self.assertEqual(self.reconciler.last_state, ReconcileState.DEGRADED_FATAL)


if __name__ == "__main__":
    unittest.main()
