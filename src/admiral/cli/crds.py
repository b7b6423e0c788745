from pathlib import Path
from typing import Optional

import typer
import yaml
from typing_extensions import Annotated

from admiral.crd.generator import CRDManager
from admiral.crd.registry import CRDRegistry

app = typer.Typer(help="Render the CustomResourceDefinitions served by admiral")

MODEL_PACKAGES = ["admiral.models"]


def _manager(output_dir=None):
    return CRDManager(CRDRegistry.from_packages(MODEL_PACKAGES), output_dir=output_dir)


@app.command("generate")
def generate(
    output: Annotated[
        Path, typer.Option("-o", "--output", help="Directory for the CRD manifests")
    ] = Path("crds/generated"),
    force: Annotated[
        bool, typer.Option("--force", help="Rewrite even when nothing changed")
    ] = False,
    validate: Annotated[
        bool, typer.Option("--validate", help="Check the written manifests")
    ] = False,
):
    """Write one manifest per kind plus a kustomization."""
    manager = _manager(output)
    try:
        written = manager.generate_all_crds(force=force)
    except ValueError as e:
        typer.echo(f"Cannot render CRDs: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(
        f"Wrote CRDs to {output}" if written else f"CRDs in {output} are up to date"
    )
    if validate:
        if not manager.validate_generated_crds():
            typer.echo("CRD validation failed", err=True)
            raise typer.Exit(1)
        typer.echo("CRD validation passed")


@app.command("validate")
def validate(
    directory: Annotated[
        Path, typer.Argument(help="Directory holding generated manifests")
    ] = Path("crds/generated"),
):
    """Check that a directory holds a valid manifest for every kind."""
    if not _manager(directory).validate_generated_crds():
        typer.echo(f"{directory} does not match the registered kinds", err=True)
        raise typer.Exit(1)
    typer.echo(f"{directory} is valid")


@app.command("show")
def show(
    kind: Annotated[
        Optional[str], typer.Option("-k", "--kind", help="Only print this kind")
    ] = None,
):
    """Print the manifests as a YAML stream, ready for ``kubectl apply -f -``."""
    crds = [
        crd
        for crd in _manager().get_crds_as_dict().values()
        if kind is None or crd["spec"]["names"]["kind"] == kind
    ]
    if not crds:
        typer.echo(f"Unknown kind: {kind}", err=True)
        raise typer.Exit(1)
    typer.echo(yaml.safe_dump_all(crds, sort_keys=False), nl=False)
