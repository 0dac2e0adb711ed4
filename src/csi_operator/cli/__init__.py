import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv())

app = typer.Typer(
    help="CSI Operator: deploys and manages CSI storage drivers on Kubernetes",
    add_completion=False,
)


@app.command("operator")
def run_operator(
    kubelet_root_dir: Annotated[
        Optional[str], typer.Option("--kubelet-root-dir", help="Path to Kubelet's root dir")
    ] = None,
    registry_domain: Annotated[
        Optional[str], typer.Option("--registry-domain", help="Domain of the image registry")
    ] = None,
    filesystems: Annotated[
        Optional[str],
        typer.Option("--filesystems", help="Supported file systems for well known block volumes"),
    ] = None,
    need_default_sc: Annotated[
        Optional[bool],
        typer.Option(
            "--need-default-sc/--no-default-sc",
            help="Create default storage classes for well known drivers",
        ),
    ] = None,
    ceph_monitors: Annotated[
        Optional[str], typer.Option("--ceph-monitors", help="Monitor addresses of Ceph cluster")
    ] = None,
    ceph_admin_id: Annotated[
        Optional[str], typer.Option("--ceph-admin-id", help="ID of Ceph admin user")
    ] = None,
    ceph_admin_key: Annotated[
        Optional[str], typer.Option("--ceph-admin-key", help="Key of Ceph admin user")
    ] = None,
    tencent_cloud_secret_id: Annotated[
        Optional[str],
        typer.Option("--tencent-cloud-secret-id", help="API Secret ID of Tencent Cloud"),
    ] = None,
    tencent_cloud_secret_key: Annotated[
        Optional[str],
        typer.Option("--tencent-cloud-secret-key", help="API Secret Key of Tencent Cloud"),
    ] = None,
):
    """Run the Kubernetes operator (connects to cluster)."""
    from csi_operator.config import load_config
    from csi_operator.main import main

    config = load_config(
        kubelet_root_dir=kubelet_root_dir,
        registry_domain=registry_domain,
        filesystems=filesystems,
        need_default_sc=need_default_sc,
        ceph_monitors=ceph_monitors,
        ceph_admin_id=ceph_admin_id,
        ceph_admin_key=ceph_admin_key,
        tencent_cloud_secret_id=tencent_cloud_secret_id,
        tencent_cloud_secret_key=tencent_cloud_secret_key,
    )
    main(config)


@app.command("generate-crds")
def generate_crds(
    output: Annotated[
        str, typer.Option("-o", "--output", help="Output directory")
    ] = "crds/generated",
    force: Annotated[bool, typer.Option("--force", help="Force regeneration")] = False,
    validate: Annotated[
        bool, typer.Option("--validate", help="Validate generated CRDs")
    ] = False,
):
    """Generate CRD YAML files from pydantic models."""
    from csi_operator.crd.generator import CRDManager

    output_dir = Path(output)
    manager = CRDManager(output_dir=output_dir)

    try:
        success = manager.generate_all_crds(force=force)
    except OSError as e:
        typer.echo(f"Failed to generate CRDs: {e}")
        sys.exit(1)

    if not success:
        typer.echo("No CRDs generated (models unchanged)")
        return

    typer.echo(f"CRDs generated successfully in {output_dir}")
    if validate:
        if manager.validate_generated_crds():
            typer.echo("CRD validation passed")
        else:
            typer.echo("CRD validation failed")
            sys.exit(1)


@app.command("supported-drivers")
def supported_drivers():
    """List the well known drivers and the CSI versions they support."""
    from csi_operator.config import load_config
    from csi_operator.enhancers import EnhancerRegistry
    from csi_operator.enhancers.versions import VERSION_TABLE

    registry = EnhancerRegistry(load_config())
    for driver in registry.supported_drivers():
        typer.echo(f"{driver}: {', '.join(sorted(VERSION_TABLE.get(driver, {})))}")


if __name__ == "__main__":
    app()
