"""
aumai-stackkeeper quickstart: asset discovery, derivation planning and
version decisions, all without touching a running service.

Run directly:

    python examples/quickstart.py

All demos use a temporary directory and clean up after themselves.
"""

from __future__ import annotations

import pathlib
import tempfile


# ---------------------------------------------------------------------------
# Demo 1: Resolve the model-asset directory
# ---------------------------------------------------------------------------

def demo_resolve_assets(root: pathlib.Path) -> str:
    """Build a fake asset tree and let the resolver pick it over an empty one."""
    print("\n=== Demo 1: Resolve the asset directory ===")

    from aumai_stackkeeper.assets import AssetDirectoryResolver, list_manifests

    empty = root / "empty-models"
    (empty / "manifests").mkdir(parents=True)

    models = root / "models"
    manifest = models / "manifests" / "registry.ollama.ai" / "library" / "llama3.2" / "latest"
    manifest.parent.mkdir(parents=True)
    manifest.write_text('{"schemaVersion": 2}', encoding="utf-8")
    (models / "blobs").mkdir()
    (models / "blobs" / ("sha256-" + "0" * 64)).write_bytes(b"\x00" * 4096)

    # The empty tree comes first but carries no files, so it is rejected
    resolver = AssetDirectoryResolver([str(empty), str(models)], mounts=lambda: [])
    assets = resolver.resolve()
    print(f"  Directory : {assets.path}")
    print(f"  Source    : {assets.source}")
    print(f"  Manifests : {assets.manifest_count}  Blobs: {assets.blob_count}")
    for name in list_manifests(assets.path):
        print(f"    - {name}")
    return assets.path


# ---------------------------------------------------------------------------
# Demo 2: Plan derived models
# ---------------------------------------------------------------------------

def demo_plan_derivations(models_dir: str) -> None:
    """Show which -maxgpu variants a post-update run would create."""
    print("\n=== Demo 2: Plan derived models ===")

    from aumai_stackkeeper.config import OrchestrationContext, Settings
    from aumai_stackkeeper.derive import DerivationPipeline
    from aumai_stackkeeper.drivers import OllamaDriver
    from aumai_stackkeeper.health import HealthProbe
    from aumai_stackkeeper.models import AssetDirectory
    from aumai_stackkeeper.reclaim import Reclaimer

    ctx = OrchestrationContext(settings=Settings(), assets=AssetDirectory(path=models_dir))
    pipeline = DerivationPipeline(ctx, OllamaDriver(), HealthProbe(), Reclaimer())

    installed = ["llama3.2:latest", "qwen2.5:32b", "mistral", "mistral-maxgpu:latest"]
    todo, present = pipeline.plan(installed)
    print(f"  Installed : {installed}")
    for asset in todo:
        print(f"  create    : {asset.name}  (from {asset.base})")
    for name in present:
        print(f"  keep      : {name}")

    print("\n  Definition for the first derivation:")
    for line in todo[0].modelfile().splitlines():
        print(f"    {line}")


# ---------------------------------------------------------------------------
# Demo 3: Version decisions
# ---------------------------------------------------------------------------

def demo_version_policy() -> None:
    """Print how each decision translates into an update for each service."""
    print("\n=== Demo 3: Version decisions ===")

    from aumai_stackkeeper.models import ServiceKind, VersionDecision, VersionState

    for kind in ServiceKind:
        for decision in VersionDecision:
            state = VersionState(service=kind, decision=decision)
            action = "update" if state.needs_update else "leave alone"
            print(f"  {kind.value:<9} {decision.value:<16} -> {action}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("aumai-stackkeeper quickstart demo")
    print("=" * 40)

    with tempfile.TemporaryDirectory() as tmp:
        models_dir = demo_resolve_assets(pathlib.Path(tmp))
        demo_plan_derivations(models_dir)

    demo_version_policy()

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
