#!/usr/bin/env python3
"""
Probe TUI - Terminal UI for watching a probe simulator.

Polls the simulator's health endpoints and /timestamps over HTTP and,
when a namespace is given, reads the simulator pods from the Kubernetes API
to show how the kubelet is reacting (Ready condition, container restarts).
"""

import argparse
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import kubernetes
import requests
from kubernetes.client import CoreV1Api, V1Pod
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# Paths and probe names (matching probe_simulator.py)
LIVENESS_PATH = "/liveness-health"
READINESS_PATH = "/readiness-health"
TIMESTAMPS_PATH = "/timestamps"
PROBE_STARTUP = "startupProbe"
PROBE_LIVENESS = "livenessProbe"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

HEALTHY_BODIES = {"up", "ready"}


def fetch_probe(session: requests.Session, base_url: str, path: str, timeout: float = 5.0) -> Dict[str, Any]:
    """Call one health endpoint and capture code, body and latency."""
    started = time.monotonic()
    try:
        resp = session.get(base_url.rstrip("/") + path, timeout=timeout)
    except requests.RequestException as e:
        return {"code": None, "body": "", "latency": time.monotonic() - started, "error": str(e)}
    return {
        "code": resp.status_code,
        "body": resp.text.strip(),
        "latency": time.monotonic() - started,
        "error": None,
    }


def fetch_timestamps(session: requests.Session, base_url: str, timeout: float = 5.0) -> Dict[str, str]:
    """Read /timestamps; an unreachable or broken endpoint yields no entries."""
    try:
        resp = session.get(base_url.rstrip("/") + TIMESTAMPS_PATH, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def format_age(ts_str: Optional[str], now: Optional[datetime] = None) -> str:
    """Format a simulator timestamp as time elapsed since then."""
    if not ts_str:
        return "N/A"
    try:
        ts = datetime.strptime(ts_str, TIMESTAMP_FORMAT)
    except (ValueError, TypeError):
        return ts_str
    seconds = int(((now or datetime.now()) - ts).total_seconds())
    if seconds < 0:
        return "N/A"
    if seconds < 60:
        return f"{seconds}s ago"
    elif seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s ago"
    else:
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m ago"


def startup_duration(timestamps: Dict[str, str]) -> str:
    """Time between startup completion and the first healthy liveness check."""
    try:
        started = datetime.strptime(timestamps[PROBE_STARTUP], TIMESTAMP_FORMAT)
        live = datetime.strptime(timestamps[PROBE_LIVENESS], TIMESTAMP_FORMAT)
    except (KeyError, ValueError, TypeError):
        return "N/A"
    return f"{int((live - started).total_seconds())}s"


def is_pod_ready(pod: V1Pod) -> bool:
    """Check if a pod is Ready."""
    conditions: List = (pod.status.conditions if pod.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def restart_count(pod: V1Pod) -> int:
    """Sum of container restarts, i.e. how often liveness failures killed it."""
    statuses: List = (pod.status.container_statuses if pod.status else None) or []
    return sum(s.restart_count or 0 for s in statuses)


def pod_rows(pods: List[V1Pod]) -> List[Dict[str, Any]]:
    rows = []
    for pod in sorted(pods, key=lambda p: p.metadata.name if p.metadata else ""):
        rows.append({
            "name": pod.metadata.name if pod.metadata else "unknown",
            "phase": (pod.status.phase if pod.status else None) or "Unknown",
            "ready": is_pod_ready(pod),
            "restarts": restart_count(pod),
        })
    return rows


def probe_style(result: Dict[str, Any]) -> str:
    if result["error"]:
        return "bold red"
    if result["body"] in HEALTHY_BODIES:
        return "bold green"
    if result["code"] == 503:
        return "bold yellow"
    return "bold red"


def render_dashboard(
    base_url: str,
    probes: Dict[str, Dict[str, Any]],
    timestamps: Dict[str, str],
    pods: Optional[List[Dict[str, Any]]] = None,
    namespace: Optional[str] = None,
) -> Panel:
    """Render the probe dashboard."""
    header_table = Table.grid(padding=(0, 2))
    header_table.add_column(style="bold cyan")
    header_table.add_column()
    header_table.add_row("Simulator:", base_url)

    for label, result in probes.items():
        if result["error"]:
            value = Text(f"unreachable ({result['error']})", style=probe_style(result))
        else:
            value = Text(f"{result['body']} ", style=probe_style(result))
            value.append(f"HTTP {result['code']}, {result['latency'] * 1000:.0f} ms", style="dim")
        header_table.add_row(f"{label}:", value)

    ts_table = Table(box=box.SIMPLE, title="First seen", title_justify="left")
    ts_table.add_column("Probe", style="bold")
    ts_table.add_column("Timestamp")
    ts_table.add_column("Age", style="dim")
    for name in sorted(timestamps):
        ts_table.add_row(name, timestamps[name], format_age(timestamps[name]))
    if not timestamps:
        ts_table.add_row("-", "nothing recorded yet", "")

    content_parts: List = [header_table, Text(""), ts_table]
    if PROBE_STARTUP in timestamps and PROBE_LIVENESS in timestamps:
        content_parts.append(Text(f"Startup to first healthy liveness check: {startup_duration(timestamps)}"))

    if pods is not None:
        pod_table = Table(box=box.SIMPLE, title=f"Pods in {namespace}", title_justify="left")
        pod_table.add_column("Pod", style="bold")
        pod_table.add_column("Phase")
        pod_table.add_column("Ready")
        pod_table.add_column("Restarts", justify="right")
        for row in pods:
            ready = Text("✅", style="green") if row["ready"] else Text("⏳", style="yellow")
            restarts = Text(str(row["restarts"]), style="bold red" if row["restarts"] else "")
            pod_table.add_row(row["name"], row["phase"], ready, restarts)
        if not pods:
            pod_table.add_row("-", "no pods match", "", "")
        content_parts.extend([Text(""), pod_table])

    legend = Text()
    legend.append("Legend: ", style="bold")
    legend.append("green healthy  ", style="green")
    legend.append("yellow starting / not ready  ", style="yellow")
    legend.append("red down / unreachable", style="red")
    content_parts.extend([Text(""), legend])

    return Panel(Group(*content_parts), title="Probe Simulator", border_style="blue")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Watch a probe simulator and the pods running it")
    parser.add_argument("--url", default="http://localhost:8080", help="Base URL of the simulator")
    parser.add_argument("--namespace", help="Namespace of the simulator pods (enables the pod table)")
    parser.add_argument("--selector", default="app=probe-simulator", help="Label selector for the pods")
    parser.add_argument("--interval", type=float, default=2.0, help="Seconds between refreshes")
    args = parser.parse_args()

    core_api: Optional[CoreV1Api] = None
    if args.namespace:
        try:
            kubernetes.config.load_incluster_config()
        except kubernetes.config.ConfigException:
            try:
                kubernetes.config.load_kube_config()
            except Exception as e:
                print(f"Failed to load Kubernetes config: {e}", file=sys.stderr)
                sys.exit(1)
        core_api = CoreV1Api()

    console = Console()
    session = requests.Session()

    def snapshot() -> Panel:
        probes = {
            "Liveness": fetch_probe(session, args.url, LIVENESS_PATH),
            "Readiness": fetch_probe(session, args.url, READINESS_PATH),
        }
        timestamps = fetch_timestamps(session, args.url)
        pods = None
        if core_api is not None:
            try:
                items = core_api.list_namespaced_pod(namespace=args.namespace, label_selector=args.selector).items
                pods = pod_rows(items)
            except kubernetes.client.exceptions.ApiException as e:
                return Panel(f"[red]Error fetching pods: {e}[/red]", title="Error")
        return render_dashboard(args.url, probes, timestamps, pods, args.namespace)

    try:
        with Live(console=console, refresh_per_second=4, screen=True) as live:
            while True:
                live.update(snapshot())
                time.sleep(args.interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Exiting...[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
