"""
Kubernetes (and Deckhouse) deployment via kubectl

Strategies:
- inplace: scale to zero, set image, scale back up
- rolling_update: set image, wait for `rollout status`
- blue_green: clone the deployment into a slot ("green" or "blue") with its
  own Service, probe it there, and on promote() point the main Service's
  selector at the slot. Until promote() no traffic reaches the candidate.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..errors import AdapterError
from ..profile import Strategy
from .base import Deployment, DeploymentAdapter
from .process import CommandRunner

logger = logging.getLogger(__name__)

SLOT_LABEL = "kcmigrate/slot"

_STRIP_METADATA = ("uid", "resourceVersion", "generation", "creationTimestamp", "managedFields", "annotations")


class KubernetesDeployment(DeploymentAdapter):
    supported_strategies = frozenset({Strategy.INPLACE, Strategy.ROLLING_UPDATE, Strategy.BLUE_GREEN})

    def __init__(self, profile, http_client=None, runner: Optional[CommandRunner] = None):
        super().__init__(profile, http_client)
        self.runner = runner or CommandRunner()
        self.k8s = self.deployment.kubernetes
        self._candidate: Optional[Deployment] = None

    def required_tools(self) -> List[str]:
        return ["kubectl"]

    def _kubectl(self, *args: str, timeout: Optional[float] = None, input_text: Optional[str] = None, check: bool = True):
        return self.runner.run(
            ["kubectl", "-n", self.k8s.namespace, *args],
            timeout=timeout or self.timeout,
            input_text=input_text,
            check=check,
        )

    def current_version(self) -> Optional[str]:
        jsonpath = "{.spec.template.spec.containers[0].image}"
        try:
            result = self._kubectl("get", "deployment", self._serving_name(), "-o", f"jsonpath={jsonpath}", timeout=30)
        except AdapterError as e:
            logger.warning(f"Could not read deployment image: {e.message}")
            return None
        image = result.stdout.strip()
        return image.rsplit(":", 1)[1] if ":" in image else None

    def deploy(self, version: str, strategy: Strategy) -> Deployment:
        if strategy == Strategy.BLUE_GREEN:
            return self._deploy_slot(version)

        image = self.deployment.container.image_ref(version)
        name = self.k8s.deployment
        if strategy == Strategy.INPLACE:
            self._kubectl("scale", f"deployment/{name}", "--replicas=0")
            self._wait_rollout(name)
            self._set_image(name, image)
            self._kubectl("scale", f"deployment/{name}", f"--replicas={self.k8s.replicas}")
        else:
            self._set_image(name, image)
        self._wait_rollout(name)

        return Deployment(
            version=version,
            strategy=strategy,
            endpoint=self.deployment.health_url,
            service_url=self.deployment.service_url,
        )

    def promote(self, deployment: Deployment) -> None:
        if deployment.strategy != Strategy.BLUE_GREEN:
            return
        slot = deployment.details.get("slot")
        if not slot:
            raise AdapterError(f"Blue-green deployment of {deployment.version} has no slot", code="SLOT_MISSING")
        logger.info(f"Switching service {self.k8s.service} to slot {slot}")
        patch = {"spec": {"selector": {SLOT_LABEL: slot}}}
        self._kubectl("patch", "service", self.k8s.service, "--type=merge", "-p", json.dumps(patch), timeout=60)
        self._candidate = None

    def rollback(self, prior: Deployment) -> Deployment:
        if self._candidate is not None:
            # Traffic never moved; drop the candidate slot
            name = self._candidate.details["name"]
            logger.info(f"Discarding candidate deployment {name}")
            self._kubectl("delete", "deployment", name, "--ignore-not-found")
            self._kubectl("delete", "service", name, "--ignore-not-found")
            self._candidate = None
            return prior

        name = prior.details.get("name", self.k8s.deployment)
        self._set_image(name, self.deployment.container.image_ref(prior.version))
        self._wait_rollout(name)
        if prior.strategy == Strategy.BLUE_GREEN and "slot" in prior.details:
            self.promote(prior)
        return prior

    def _set_image(self, name: str, image: str) -> None:
        logger.info(f"Setting image of {name} to {image}")
        self._kubectl("set", "image", f"deployment/{name}", f"{self.k8s.container}={image}")

    def _wait_rollout(self, name: str) -> None:
        self._kubectl("rollout", "status", f"deployment/{name}", f"--timeout={self.timeout}s")

    def _serving_slot(self) -> Optional[str]:
        try:
            result = self._kubectl("get", "service", self.k8s.service, "-o", "json", timeout=30)
            selector = json.loads(result.stdout).get("spec", {}).get("selector", {})
        except (AdapterError, json.JSONDecodeError):
            return None
        return selector.get(SLOT_LABEL)

    def _serving_name(self) -> str:
        slot = self._serving_slot()
        return f"{self.k8s.deployment}-{slot}" if slot else self.k8s.deployment

    def _deploy_slot(self, version: str) -> Deployment:
        slot = "blue" if self._serving_slot() == "green" else "green"
        name = f"{self.k8s.deployment}-{slot}"

        result = self._kubectl("get", "deployment", self.k8s.deployment, "-o", "json", timeout=30)
        try:
            base = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise AdapterError(f"kubectl returned unreadable deployment {self.k8s.deployment}: {e}", code="TOOL_OUTPUT_INVALID") from e
        manifest = {
            "apiVersion": "v1",
            "kind": "List",
            "items": [
                slot_deployment(base, name, slot, self.deployment.container.image_ref(version), self.k8s.replicas),
                slot_service(name, slot, base),
            ],
        }
        logger.info(f"Creating candidate {name} at {version}")
        self._kubectl("apply", "-f", "-", input_text=json.dumps(manifest))
        self._wait_rollout(name)

        service_url = self.k8s.green_endpoint or f"http://{name}.{self.k8s.namespace}.svc:8080"
        base_url = service_url.rstrip("/")
        self._candidate = Deployment(
            version=version,
            strategy=Strategy.BLUE_GREEN,
            endpoint=base_url + self.deployment.health_path,
            service_url=base_url,
            environment=slot,
            details={"slot": slot, "name": name},
        )
        return self._candidate


def slot_deployment(base: Dict[str, Any], name: str, slot: str, image: str, replicas: int) -> Dict[str, Any]:
    """Copy of a Deployment object relabelled for a blue-green slot."""
    metadata = {k: v for k, v in base.get("metadata", {}).items() if k not in _STRIP_METADATA}
    metadata["name"] = name
    metadata["labels"] = {**metadata.get("labels", {}), SLOT_LABEL: slot}

    spec = json.loads(json.dumps(base.get("spec", {})))
    spec["replicas"] = replicas
    spec.setdefault("selector", {}).setdefault("matchLabels", {})[SLOT_LABEL] = slot
    template_meta = spec.setdefault("template", {}).setdefault("metadata", {})
    template_meta["labels"] = {**template_meta.get("labels", {}), SLOT_LABEL: slot}
    containers = spec["template"].setdefault("spec", {}).get("containers", [])
    if containers:
        containers[0]["image"] = image

    return {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": metadata, "spec": spec}


def slot_service(name: str, slot: str, base: Dict[str, Any]) -> Dict[str, Any]:
    """ClusterIP Service reaching only the pods of one slot."""
    labels = base.get("spec", {}).get("selector", {}).get("matchLabels", {})
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "labels": {SLOT_LABEL: slot}},
        "spec": {
            "selector": {**labels, SLOT_LABEL: slot},
            "ports": [{"name": "http", "port": 8080, "targetPort": 8080}],
        },
    }
