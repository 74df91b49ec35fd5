"""
Recipe input fingerprints.

A fingerprint is a sha256 over everything that should force a recipe to run
again when it changes:
- the recipe definition with its step templates rendered for the network
- the rendered ``fingerprint.values`` (account ids, store parameters)
- the contents of files matched by ``fingerprint.files`` under the project root
- the fingerprints of the prerequisites computed in the same run

What goes in is declared per recipe: build-contracts hashes its sources,
create-accounts only its account list, deploy its wasm artifacts plus the
upstream fingerprints.
"""

import hashlib
import json
from pathlib import Path
from typing import Mapping

from mintorch.schemas import NetworkProfile, Recipe
from mintorch.utils import get_file_checksum, substitute_placeholders


def render_recipe(recipe: Recipe, profile: NetworkProfile) -> dict:
    """Recipe definition with every step template rendered for the profile."""
    values = profile.placeholders()
    steps = []
    for step in recipe.steps:
        steps.append({
            "step_id": step.step_id,
            "command": [substitute_placeholders(part, values) for part in step.command],
            "cwd": substitute_placeholders(step.cwd, values) if step.cwd else None,
            "expected_exit_code": step.expected_exit_code,
            "env": {k: substitute_placeholders(v, values) for k, v in step.env},
            "detached": step.detached,
        })
    return {"name": recipe.name, "steps": steps}


def hash_files(patterns: tuple[str, ...], root: Path) -> list[list[str]]:
    """
    Checksums of files matched by glob patterns under root.

    A pattern that matches nothing contributes a ``missing`` marker so that
    the artifact appearing later changes the fingerprint.
    """
    entries: list[list[str]] = []
    for pattern in patterns:
        matches = sorted(p for p in root.glob(pattern) if p.is_file())
        if not matches:
            entries.append([pattern, "missing"])
            continue
        for path in matches:
            entries.append([path.relative_to(root).as_posix(), get_file_checksum(path)])
    return entries


def compute_fingerprint(
    recipe: Recipe,
    profile: NetworkProfile,
    project_root: Path,
    prerequisite_fingerprints: Mapping[str, str] | None = None,
) -> str:
    """
    Compute the fingerprint for one recipe on one network.

    Args:
        recipe: The recipe
        profile: Resolved network profile (templates are rendered against it)
        project_root: Root for the recipe's file globs
        prerequisite_fingerprints: Fingerprints of prerequisites from this run

    Returns:
        "sha256:<hex>"
    """
    values = profile.placeholders()
    spec = recipe.fingerprint

    payload = {
        "recipe": render_recipe(recipe, profile),
        "values": [substitute_placeholders(v, values) for v in spec.values],
        "files": hash_files(spec.files, Path(project_root)),
    }
    if spec.include_prerequisites:
        upstream = prerequisite_fingerprints or {}
        payload["requires"] = [[name, upstream.get(name, "")] for name in recipe.requires]

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode()).hexdigest()
