"""Deploy adapter wrapping kubectl (and eksctl for EKS kubeconfig)."""

from pathlib import Path
from typing import List, Optional

from ..core.interfaces import AdapterContext, StageResult
from .base import CommandAdapter


class KubernetesDeployAdapter(CommandAdapter):
    """Applies manifests, rolls a deployment to a new image and waits for it.

    Parameters:
        manifests: Manifest files or directories for ``kubectl apply -f``
        deployment: Deployment to update and watch
        container: Container name inside the deployment (defaults to deployment)
        image: Image to deploy, unless provided through the ``image`` input
        namespace: Target namespace (default ``default``)
        kube_context: kubectl context name
        kubeconfig: kubeconfig path, unless provided through the ``kubeconfig`` input
        cluster / region: EKS cluster; writes a kubeconfig with eksctl first
        rollout_timeout: ``kubectl rollout status`` timeout (default ``300s``)
    """

    adapter_type = "kubectl"

    def validate_parameters(self) -> List[str]:
        errors = []
        if not self.parameters.get("manifests") and not self.parameters.get("deployment"):
            errors.append("either manifests or deployment is required")
        if self.parameters.get("cluster") and not self.parameters.get("region"):
            errors.append("region is required when cluster is set")
        return errors

    def _kubeconfig(self, context: AdapterContext) -> Optional[str]:
        if context.has_input("kubeconfig"):
            return context.input("kubeconfig").value

        kubeconfig = self.parameters.get("kubeconfig")
        if self.parameters.get("cluster"):
            kubeconfig = kubeconfig or str(
                self.resolve_path(context, f".cipipeline/kube/{self.parameters['cluster']}.yaml")
            )
            Path(kubeconfig).parent.mkdir(parents=True, exist_ok=True)
            self.run_command([
                "eksctl", "utils", "write-kubeconfig",
                "--cluster", self.parameters["cluster"],
                "--region", self.parameters["region"],
                "--kubeconfig", kubeconfig,
            ], context)
        return kubeconfig

    def execute(self, context: AdapterContext) -> StageResult:
        namespace = self.parameters.get("namespace", "default")
        kubeconfig = self._kubeconfig(context)

        base = ["kubectl"]
        if kubeconfig:
            base += ["--kubeconfig", kubeconfig]
        if self.parameters.get("kube_context"):
            base += ["--context", self.parameters["kube_context"]]
        base += ["--namespace", namespace]

        manifests = self.parameters.get("manifests", [])
        if isinstance(manifests, str):
            manifests = [manifests]
        for manifest in manifests:
            self.run_command(base + ["apply", "-f", str(self.resolve_path(context, manifest))], context)

        image = context.input("image").value if context.has_input("image") else self.parameters.get("image")
        deployment = self.parameters.get("deployment")

        if deployment and image:
            container = self.parameters.get("container", deployment)
            self.run_command(base + ["set", "image", f"deployment/{deployment}", f"{container}={image}"],
                             context)

        if deployment:
            self.run_command(base + [
                "rollout", "status", f"deployment/{deployment}",
                f"--timeout={self.parameters.get('rollout_timeout', '300s')}",
            ], context)
            status = f"{namespace}/{deployment}@{image}" if image else f"{namespace}/{deployment}"
        else:
            status = f"{namespace}:{len(manifests)} manifest(s) applied"

        return StageResult.success(artifacts={"deployment": status}, message=f"Deployed {status}")
