from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import typer
import uvicorn
import yaml

from src.cluster.kube_client import KubeClient, KubeClientOptions
from src.cluster.store import InMemoryStore, ObjectStore, StoreError
from src.common import names
from src.common.errors import ConfigError, ReconcileError
from src.common.readiness import ReadyFlag
from src.resolver.preconditions import PreconditionResolver
from src.status.manager import StatusManager

from .config import OperatorConfig, load_config
from .queue import WorkQueue, process_ready
from .reconciler import IntrusionDetectionReconciler
from .server import create_app
from .watches import ChangeDetector, dpi_api_watcher, license_api_watcher

app = typer.Typer(help="Reconcile the intrusion detection component of a cluster.")

logger = logging.getLogger(__name__)

RECONCILE_KEY = f"{names.INTRUSION_DETECTION_KIND}/{names.INTRUSION_DETECTION_NAME}"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_path: Optional[Path]) -> OperatorConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _collect_manifests(paths: Iterable[Path]) -> List[Path]:
    files: List[Path] = []
    seen = set()
    for path in paths:
        resolved = path.expanduser().resolve()
        if resolved.is_dir():
            candidates = sorted(list(resolved.glob("*.yaml")) + list(resolved.glob("*.yml")))
        elif resolved.exists():
            candidates = [resolved]
        else:
            raise typer.BadParameter(f"State file not found: {path}")
        for candidate in candidates:
            if candidate not in seen:
                seen.add(candidate)
                files.append(candidate)
    return files


def build_reconciler(
    store: ObjectStore,
    config: OperatorConfig,
    status_manager: StatusManager,
    flags: Dict[str, ReadyFlag],
) -> IntrusionDetectionReconciler:
    resolver = PreconditionResolver(
        store,
        operator_namespace=config.namespace,
        default_registry=config.default_registry,
        license_requeue_seconds=config.license_requeue_seconds,
        secret_wait_requeue_seconds=config.secret_wait_requeue_seconds,
    )
    return IntrusionDetectionReconciler(
        store,
        status_manager,
        flags["license"],
        flags["dpi"],
        resolver=resolver,
    )


@app.command()
def reconcile(
    state: List[Path] = typer.Option(
        ...,
        "--state",
        "-s",
        help="YAML manifest files or directories describing the current cluster.",
    ),
    out: Path = typer.Option(
        Path("data/reconciled.yaml"),
        "--out",
        "-o",
        help="Where to write the cluster objects after the pass.",
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Operator config YAML."),
    license_api_ready: bool = typer.Option(
        True,
        "--license-api-ready/--no-license-api-ready",
        help="Treat the LicenseKey API as available.",
    ),
    dpi_api_ready: bool = typer.Option(
        True,
        "--dpi-api-ready/--no-dpi-api-ready",
        help="Treat the DeepPacketInspection API as available.",
    ),
    status_out: Optional[Path] = typer.Option(None, "--status-out", help="Optional YAML file for the status snapshot."),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level."),
) -> None:
    """Run one reconcile pass against manifests loaded into memory."""

    _configure_logging(log_level)
    config = _load(config_path)
    manifests = _collect_manifests(state)
    if not manifests:
        raise typer.BadParameter("No manifest files found to load.")
    try:
        store = InMemoryStore.from_manifests(manifests)
    except (StoreError, yaml.YAMLError) as exc:
        raise typer.BadParameter(f"Failed to load cluster state: {exc}") from exc

    flags = {"license": ReadyFlag(), "dpi": ReadyFlag()}
    if license_api_ready:
        flags["license"].mark_ready()
    if dpi_api_ready:
        flags["dpi"].mark_ready()
    status_manager = StatusManager()
    reconciler = build_reconciler(store, config, status_manager, flags)

    exit_code = 0
    try:
        result = reconciler.reconcile(RECONCILE_KEY)
        typer.echo(f"Reconcile finished in state {result.state.value} (requeue after {result.requeue_after:g}s)")
    except ReconcileError as exc:
        typer.echo(f"Reconcile failed: {exc.reason}: {exc.message}", err=True)
        exit_code = 1

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(yaml.safe_dump_all(store.dump(), sort_keys=True), encoding="utf-8")
    typer.echo(f"Wrote {len(store)} object(s) to {out.resolve()}")
    if status_out is not None:
        status_out.parent.mkdir(parents=True, exist_ok=True)
        status_out.write_text(yaml.safe_dump(status_manager.snapshot(store), sort_keys=True), encoding="utf-8")
    if exit_code:
        raise typer.Exit(code=exit_code)


def _serve_probes(status_manager: StatusManager, flags: Dict[str, ReadyFlag], store: ObjectStore, port: int) -> None:
    server = uvicorn.Server(
        uvicorn.Config(create_app(status_manager, flags, store), host="0.0.0.0", port=port, log_level="warning")
    )
    thread = threading.Thread(target=server.run, name="probes", daemon=True)
    thread.start()
    logger.info("Serving probes on port %d", port)


def _client(config: OperatorConfig) -> KubeClient:
    if not config.api_server:
        return KubeClient.in_cluster(timeout_seconds=config.request_timeout_seconds, retries=config.request_retries)
    token = None
    if config.token_file:
        token = Path(config.token_file).read_text(encoding="utf-8").strip()
    options = KubeClientOptions(
        server=config.api_server,
        token=token,
        ca_file=config.ca_file,
        timeout_seconds=config.request_timeout_seconds,
        retries=config.request_retries,
    )
    return KubeClient(options)


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Operator config YAML."),
    max_passes: int = typer.Option(0, "--max-passes", min=0, help="Stop after this many passes (0 runs forever)."),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level."),
) -> None:
    """Watch the cluster and reconcile until interrupted."""

    _configure_logging(log_level)
    config = _load(config_path)
    try:
        client = _client(config)
    except (RuntimeError, ValueError, OSError) as exc:
        raise typer.BadParameter(f"Cannot reach the Kubernetes API: {exc}") from exc

    flags = {"license": ReadyFlag(), "dpi": ReadyFlag()}
    status_manager = StatusManager()
    reconciler = build_reconciler(client, config, status_manager, flags)
    watchers = [license_api_watcher(client, flags["license"]), dpi_api_watcher(client, flags["dpi"])]
    changes = ChangeDetector(client)
    queue = WorkQueue(backoff_base=config.backoff_base_seconds, backoff_max=config.backoff_max_seconds)
    if config.probe_port:
        _serve_probes(status_manager, flags, client, config.probe_port)

    passes = 0
    next_resync = time.monotonic()
    try:
        while not max_passes or passes < max_passes:
            for watcher in watchers:
                if watcher.poll():
                    queue.add(RECONCILE_KEY)
            if changes.poll():
                queue.add(RECONCILE_KEY)
            if time.monotonic() >= next_resync:
                queue.add(RECONCILE_KEY)
                next_resync = time.monotonic() + config.resync_seconds
            passes += process_ready(queue, reconciler.reconcile)
            delay = queue.next_delay()
            wait = config.watch_interval_seconds if delay is None else min(delay, config.watch_interval_seconds)
            time.sleep(wait)
    except KeyboardInterrupt:
        typer.echo("Interrupted; shutting down")
    finally:
        client.close()
    typer.echo(f"Ran {passes} reconcile pass(es)")


if __name__ == "__main__":
    app()
