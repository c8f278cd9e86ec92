"""Integration test fixtures using pytest-kubernetes for cluster management."""
import os
import subprocess
import time
import pytest
from pathlib import Path
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pytest_kubernetes.providers import AClusterManager


SIMULATOR_IMAGE = "probe-simulator:test"
NAMESPACE = "probe-demo"
APP_LABEL = "probe-simulator"


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Expose test outcome on the test item so fixtures can react in teardown.

    Pattern:
      if request.node.rep_call.failed: ...
    """
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def _debug_dump_simulator(k8s: AClusterManager, namespace: str = NAMESPACE) -> None:
    """Best-effort debug dump of simulator state (events + pod logs). Never raises."""

    def safe_kubectl(args: list[str]) -> str:
        try:
            return k8s.kubectl(args, as_dict=False)
        except Exception as e:  # noqa: BLE001 - best-effort debug helper
            return f"[debug-dump] failed: kubectl {' '.join(args)}: {e}"

    print("\n==================== DEBUG DUMP (probe-simulator) ====================")
    print(safe_kubectl(["get", "pods", "-n", namespace, "-l", f"app={APP_LABEL}", "-o", "wide"]))
    print(safe_kubectl(["describe", "deploy", APP_LABEL, "-n", namespace]))
    print("\n--- events (newest last) ---")
    print(safe_kubectl(["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"]))

    pods = safe_kubectl(["get", "pods", "-n", namespace, "-l", f"app={APP_LABEL}", "-o", "name"])
    pod_names = [line.strip() for line in pods.splitlines() if line.strip().startswith("pod/")]
    if not pod_names:
        print("[debug-dump] no simulator pods found for logs")
        return

    for pod in pod_names[:2]:
        print(f"\n--- logs: {pod} (tail 400) ---")
        print(safe_kubectl(["logs", pod, "-n", namespace, "--tail=400"]))


def _build_image(image_name: str, dockerfile_path: Path, context_path: Path) -> None:
    """Build Docker image using subprocess to avoid credential store issues."""
    result = subprocess.run(
        ["docker", "images", "-q", image_name],
        capture_output=True, text=True
    )
    if result.stdout.strip():
        return  # Image already exists

    subprocess.run(
        ["docker", "build", "-t", image_name, "-f", str(dockerfile_path), str(context_path)],
        check=True
    )


def _simulator_deployment(prime_count: int) -> client.V1Deployment:
    """Deployment wiring all three probes to the simulator endpoints."""
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=APP_LABEL),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels={"app": APP_LABEL}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": APP_LABEL}),
                spec=client.V1PodSpec(
                    termination_grace_period_seconds=1,
                    containers=[client.V1Container(
                        name="app",
                        image=SIMULATOR_IMAGE,
                        image_pull_policy="Never",
                        env=[
                            client.V1EnvVar(name="PRIME_NUMBER_COUNT", value=str(prime_count)),
                            client.V1EnvVar(name="PS_PORT", value="8080"),
                            client.V1EnvVar(name="PS_JSON_LOGS", value="true"),
                        ],
                        ports=[client.V1ContainerPort(name="http", container_port=8080)],
                        startup_probe=client.V1Probe(
                            http_get=client.V1HTTPGetAction(path="/liveness-health", port="http"),
                            period_seconds=2,
                            failure_threshold=60,
                        ),
                        liveness_probe=client.V1Probe(
                            http_get=client.V1HTTPGetAction(path="/liveness-health", port="http"),
                            period_seconds=5,
                            timeout_seconds=3,
                            failure_threshold=2,
                        ),
                        readiness_probe=client.V1Probe(
                            http_get=client.V1HTTPGetAction(path="/readiness-health", port="http"),
                            period_seconds=2,
                            failure_threshold=1,
                        ),
                    )],
                ),
            ),
        ),
    )


@pytest.fixture
def cluster(k8s: AClusterManager, request):
    """
    Set up the probe simulator on a Kubernetes cluster managed by pytest-kubernetes.

    pytest-kubernetes picks the first available provider (k3d, kind, minikube);
    override with --k8s-provider.
    """
    project_root = Path(__file__).parent.parent.parent
    always = os.environ.get("PS_TEST_DEBUG") == "1"

    try:
        if not k8s.ready(timeout=5):
            print(f"[cluster] Creating cluster '{k8s.cluster_name}'...")
            k8s.create()
            print(f"[cluster] Cluster '{k8s.cluster_name}' is ready")
        else:
            print(f"[cluster] Cluster '{k8s.cluster_name}' already exists and is ready")

        _build_image(SIMULATOR_IMAGE, project_root / "Dockerfile", project_root)
        print(f"[cluster] Loading image into cluster...")
        k8s.load_image(SIMULATOR_IMAGE)

        os.environ["KUBECONFIG"] = str(k8s.kubeconfig)
        config.load_kube_config(config_file=str(k8s.kubeconfig))
        core_v1 = client.CoreV1Api()
        apps_v1 = client.AppsV1Api()

        try:
            core_v1.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=NAMESPACE)))
        except ApiException as e:
            if e.status != 409:  # Already exists
                raise

        k8s.core_v1 = core_v1
        k8s.apps_v1 = apps_v1

        yield k8s

    except Exception:
        if always:
            _debug_dump_simulator(k8s)
        raise

    finally:
        rep_call = getattr(request.node, "rep_call", None)
        failed = bool(rep_call and rep_call.failed)
        if always or failed:
            _debug_dump_simulator(k8s)


@pytest.fixture
def simulator(cluster: AClusterManager):
    """Deploy the simulator, wait until it is Available, clean up after the test."""
    apps_v1 = cluster.apps_v1

    try:
        apps_v1.create_namespaced_deployment(namespace=NAMESPACE, body=_simulator_deployment(prime_count=20000))
    except ApiException as e:
        if e.status != 409:
            raise

    deadline = time.time() + 180
    while time.time() < deadline:
        try:
            deployment = apps_v1.read_namespaced_deployment(APP_LABEL, NAMESPACE)
            conditions = (deployment.status.conditions if deployment.status else None) or []
            if any(c.type == "Available" and c.status == "True" for c in conditions):
                break
        except ApiException:
            pass
        time.sleep(2)
    else:
        raise RuntimeError("Simulator deployment did not become available within timeout")

    yield cluster

    try:
        apps_v1.delete_namespaced_deployment(APP_LABEL, NAMESPACE, propagation_policy="Background")
    except ApiException:
        pass


@pytest.fixture
def simulator_pod(simulator: AClusterManager):
    """Return a helper that fetches the current simulator pod."""
    def _pod() -> client.V1Pod:
        pods = simulator.core_v1.list_namespaced_pod(NAMESPACE, label_selector=f"app={APP_LABEL}").items
        live = [p for p in pods if p.metadata and not p.metadata.deletion_timestamp]
        assert live, "no simulator pod found"
        return live[0]
    return _pod


@pytest.fixture
def call_in_pod(simulator: AClusterManager):
    """Run an HTTP GET against the simulator from inside its own container."""
    def _call(pod_name: str, path: str) -> str:
        script = (
            "import urllib.request;"
            f"print(urllib.request.urlopen('http://127.0.0.1:8080{path}').read().decode())"
        )
        return simulator.kubectl(
            ["exec", pod_name, "-n", NAMESPACE, "--", "python", "-c", script],
            as_dict=False,
        )
    return _call


@pytest.fixture
def wait_for_pod(simulator: AClusterManager, simulator_pod):
    """Poll the simulator pod until ``predicate(pod)`` holds."""
    def _wait(predicate, description: str, timeout: int = 120) -> client.V1Pod:
        deadline = time.time() + timeout
        while time.time() < deadline:
            try:
                pod = simulator_pod()
                if predicate(pod):
                    return pod
            except (ApiException, AssertionError):
                pass
            time.sleep(2)
        raise TimeoutError(f"Pod did not reach state '{description}' within {timeout}s")
    return _wait
