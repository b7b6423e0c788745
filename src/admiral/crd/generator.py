"""Render CustomResourceDefinitions from the registered pydantic models."""

import hashlib
import json
import logging
from pathlib import Path

import yaml
from kubernetes import client
from kubernetes.client.exceptions import ApiException

logger = logging.getLogger(__name__)

DEFS_PREFIX = "#/$defs/"
FINGERPRINT_FILE = ".crds_fingerprint"
KUSTOMIZATION_FILE = "kustomization.yaml"

PRESERVE_UNKNOWN = {"x-kubernetes-preserve-unknown-fields": True}


def structural_schema(node, defs):
    """Translate a pydantic JSON schema node into a structural OpenAPI schema.

    The API server rejects ``$ref``, ``anyOf`` with nulls and untyped
    nodes, so references are inlined, ``Optional`` is unwrapped and
    ``Union[int, str]`` becomes ``x-kubernetes-int-or-string``.
    """
    description = node.get("description")

    ref = node.get("$ref", "")
    if ref.startswith(DEFS_PREFIX) and ref[len(DEFS_PREFIX):] in defs:
        out = structural_schema(defs[ref[len(DEFS_PREFIX):]], defs)
    elif "anyOf" in node:
        out = _union_schema(node["anyOf"], defs)
    elif node.get("type") == "object":
        out = _object_schema(node, defs)
    elif node.get("type") == "array":
        out = {"type": "array"}
        if "items" in node:
            out["items"] = structural_schema(node["items"], defs)
    else:
        out = _scalar_schema(node)

    if description:
        out["description"] = description
    return out


def _union_schema(variants, defs):
    present = [v for v in variants if v.get("type") != "null"]
    if {v.get("type") for v in present} == {"integer", "string"}:
        return {"x-kubernetes-int-or-string": True}
    if len(present) == 1:
        out = structural_schema(present[0], defs)
        # a null default would fail structural validation
        out.pop("default", None)
        return out
    return dict(PRESERVE_UNKNOWN)


def _object_schema(node, defs):
    out = {"type": "object"}
    if "properties" in node:
        out["properties"] = {
            name: structural_schema(prop, defs)
            for name, prop in node["properties"].items()
        }
        if node.get("required"):
            out["required"] = list(node["required"])
    elif isinstance(node.get("additionalProperties"), dict):
        out["additionalProperties"] = structural_schema(node["additionalProperties"], defs)
    else:
        # free-form maps such as policy settings and affinity
        out.update(PRESERVE_UNKNOWN)
    return out


def _scalar_schema(node):
    out = {}
    if "type" in node:
        out["type"] = node["type"]
    if "enum" in node:
        out["enum"] = list(node["enum"])
    elif "const" in node:
        out["enum"] = [node["const"]]
    if "enum" in out:
        out.setdefault("type", "string")
    if node.get("default") is not None:
        out["default"] = node["default"]
    if "type" not in out:
        out.update(PRESERVE_UNKNOWN)
    return out


def model_schema(model_class):
    """Structural schema for a whole pydantic model."""
    schema = model_class.model_json_schema()
    return structural_schema(
        {key: value for key, value in schema.items() if key != "title"},
        schema.get("$defs", {}),
    )


class CRDManager:
    """Builds CRD manifests for a registry, writes them out and applies them."""

    def __init__(self, registry, output_dir=None):
        self.registry = registry
        self.output_dir = Path(output_dir) if output_dir else Path("crds/generated")

    def build_crd(self, model_info):
        """Build the CustomResourceDefinition manifest for one registered kind."""
        kind = model_info["kind"]
        plural = model_info["plural"]
        status_model = model_info.get("status_model")

        try:
            spec_schema = model_schema(model_info["model"])
        except Exception as e:
            raise ValueError(f"Cannot build a schema for {kind}: {e}") from e

        version = {
            "name": model_info["version"],
            "served": True,
            "storage": True,
            "subresources": {"status": {}},
            "schema": {
                "openAPIV3Schema": {
                    "type": "object",
                    "required": ["spec"],
                    "properties": {
                        "spec": spec_schema,
                        "status": (
                            model_schema(status_model)
                            if status_model is not None
                            else {"type": "object", **PRESERVE_UNKNOWN}
                        ),
                    },
                }
            },
        }
        if model_info.get("printer_columns"):
            version["additionalPrinterColumns"] = list(model_info["printer_columns"])

        names = {
            "kind": kind,
            "listKind": f"{kind}List",
            "plural": plural,
            "singular": model_info["singular"],
        }
        if model_info.get("short_names"):
            names["shortNames"] = list(model_info["short_names"])

        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": f"{plural}.{model_info['group']}"},
            "spec": {
                "group": model_info["group"],
                "scope": model_info["scope"],
                "names": names,
                "versions": [version],
            },
        }

    def get_crds_as_dict(self):
        """All CRD manifests keyed by CRD name."""
        crds = {}
        for model_info in self.registry.get_all_models().values():
            crd = self.build_crd(model_info)
            crds[crd["metadata"]["name"]] = crd
        return crds

    @staticmethod
    def fingerprint(crds):
        payload = json.dumps(crds, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

    def generate_all_crds(self, force=False):
        """Write one YAML file per CRD plus a kustomization.

        Returns:
            bool: False when the rendered CRDs match the previous run
        """
        crds = self.get_crds_as_dict()
        if not crds:
            logger.warning("No CRD models registered, nothing to generate")
            return False

        self.output_dir.mkdir(parents=True, exist_ok=True)
        fingerprint_path = self.output_dir / FINGERPRINT_FILE
        fingerprint = self.fingerprint(crds)
        if (
            not force
            and fingerprint_path.exists()
            and fingerprint_path.read_text().strip() == fingerprint
        ):
            logger.info("CRDs unchanged, skipping generation")
            return False

        filenames = []
        for name, crd in sorted(crds.items()):
            filename = f"{name}.yaml"
            with open(self.output_dir / filename, "w") as f:
                yaml.safe_dump(crd, f, sort_keys=False)
            filenames.append(filename)
            logger.info(f"Wrote CRD {filename}")

        with open(self.output_dir / KUSTOMIZATION_FILE, "w") as f:
            yaml.safe_dump(
                {
                    "apiVersion": "kustomize.config.k8s.io/v1beta1",
                    "kind": "Kustomization",
                    "resources": filenames,
                },
                f,
                sort_keys=False,
            )
        fingerprint_path.write_text(fingerprint)

        logger.info(f"Generated {len(filenames)} CRDs in {self.output_dir}")
        return True

    def validate_generated_crds(self):
        """Check every written CRD file against the registered kinds."""
        expected = set(self.get_crds_as_dict())
        found = set()

        for path in sorted(self.output_dir.glob("*.yaml")):
            if path.name == KUSTOMIZATION_FILE:
                continue
            try:
                crd = yaml.safe_load(path.read_text())
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Cannot read {path}: {e}")
                return False

            problem = self._crd_problem(crd)
            if problem:
                logger.error(f"{path.name}: {problem}")
                return False
            found.add(crd["metadata"]["name"])

        missing = expected - found
        if missing:
            logger.error(f"Missing CRD files: {sorted(missing)}")
            return False

        logger.info(f"Validated {len(found)} CRD files")
        return True

    @staticmethod
    def _crd_problem(crd):
        if not isinstance(crd, dict) or crd.get("kind") != "CustomResourceDefinition":
            return "not a CustomResourceDefinition"
        spec = crd.get("spec") or {}
        plural = (spec.get("names") or {}).get("plural")
        if crd.get("metadata", {}).get("name") != f"{plural}.{spec.get('group')}":
            return "name must be <plural>.<group>"
        versions = spec.get("versions") or []
        if sum(1 for v in versions if v.get("storage")) != 1:
            return "exactly one storage version is required"
        if any("openAPIV3Schema" not in (v.get("schema") or {}) for v in versions):
            return "every version needs an openAPIV3Schema"
        return None

    def apply_crds_to_cluster(self, api=None):
        """Create missing CRDs and merge-patch existing ones.

        Returns:
            bool: True if at least one CRD was applied
        """
        api = api or client.ApiextensionsV1Api()
        applied = 0

        for name, crd in self.get_crds_as_dict().items():
            try:
                api.create_custom_resource_definition(body=crd)
                logger.info(f"Created CRD {name}")
            except ApiException as e:
                if e.status != 409:
                    logger.error(f"Failed to create CRD {name}: {e.reason}")
                    continue
                api.patch_custom_resource_definition(name=name, body=crd)
                logger.info(f"Patched CRD {name}")
            applied += 1

        return applied > 0
