from typing import Optional

import typer
from typing_extensions import Annotated
from dotenv import load_dotenv, find_dotenv

from admiral.cli.crds import app as crds_command

load_dotenv(find_dotenv())

app = typer.Typer(
    help="Admiral: Kubernetes admission policy operator",
    add_completion=False,
)

app.add_typer(crds_command, name="crds")


@app.command("operator")
def run_operator(
    namespace: Annotated[
        Optional[str],
        typer.Option(
            "-n", "--deployments-namespace", help="Namespace for policy server workloads"
        ),
    ] = None,
    leader_elect: Annotated[
        Optional[bool],
        typer.Option("--leader-elect/--no-leader-elect", help="Enable leader election"),
    ] = None,
    client_ca_configmap: Annotated[
        Optional[str],
        typer.Option(
            "--client-ca-configmap-name", help="ConfigMap with the client CA (enables mTLS)"
        ),
    ] = None,
    enable_metrics: Annotated[
        Optional[bool],
        typer.Option("--enable-metrics/--disable-metrics", help="Export metrics"),
    ] = None,
    enable_tracing: Annotated[
        Optional[bool],
        typer.Option("--enable-tracing/--disable-tracing", help="Enable tracing"),
    ] = None,
    always_accept: Annotated[
        Optional[bool],
        typer.Option(
            "--always-accept-admission-reviews-on-deployments-namespace"
            "/--no-always-accept-admission-reviews-on-deployments-namespace",
            help="Exclude the deployments namespace from cluster-wide policies",
        ),
    ] = None,
    webhook_service_name: Annotated[
        Optional[str],
        typer.Option(
            "--webhook-service-name", help="Service exposing the controller admission webhooks"
        ),
    ] = None,
    enable_otel_sidecar: Annotated[
        Optional[bool],
        typer.Option(
            "--enable-otel-sidecar/--disable-otel-sidecar",
            help="Inject an OpenTelemetry collector sidecar into policy servers",
        ),
    ] = None,
    admission_webhooks: Annotated[
        Optional[bool],
        typer.Option(
            "--admission-webhooks/--no-admission-webhooks",
            help="Serve validating and defaulting webhooks for the custom resources",
        ),
    ] = None,
):
    """Run the operator against the current cluster.

    Flags left unset fall back to the environment (and a ``.env`` file).
    """
    from admiral.config import OperatorConfig
    from admiral.main import main

    config = OperatorConfig.from_env(
        deployments_namespace=namespace,
        leader_election=leader_elect,
        client_ca_configmap_name=client_ca_configmap,
        enable_metrics=enable_metrics,
        enable_tracing=enable_tracing,
        always_accept_admission_reviews_on_deployments_namespace=always_accept,
        admission_webhooks_enabled=admission_webhooks,
        webhook_service_name=webhook_service_name,
        enable_otel_sidecar=enable_otel_sidecar,
    )
    main(config)
