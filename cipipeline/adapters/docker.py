"""Build/publish adapter wrapping the Docker CLI."""

from typing import List

from ..core.interfaces import AdapterContext, StageResult
from .base import CommandAdapter


class DockerBuildAdapter(CommandAdapter):
    """Builds an image, pushes it to a registry and publishes its digest.

    Parameters:
        image: Repository name, e.g. ``myuser/app`` (required)
        tag: Image tag (default ``latest``)
        context: Build context directory
        dockerfile: Dockerfile path
        build_args: ``--build-arg`` values
        push: Push to the registry (default True)
        login: Run ``docker login`` first (default False)
        registry: Registry host for login (Docker Hub when omitted)
        username_credential / password_credential: Credential names for login
    """

    adapter_type = "docker"

    def validate_parameters(self) -> List[str]:
        errors = []
        if not self.parameters.get("image"):
            errors.append("image is required")
        if ":" in str(self.parameters.get("image", "")).rsplit("/", 1)[-1]:
            errors.append("image must not include a tag; use the tag parameter")
        return errors

    def execute(self, context: AdapterContext) -> StageResult:
        image = self.parameters["image"]
        tag = self.parameters.get("tag", "latest")
        reference = f"{image}:{tag}"
        build_context = self.resolve_path(context, self.parameters.get("context", "."))

        if self.parameters.get("login"):
            self._login(context)

        cmd = ["docker", "build", "-t", reference,
               "-f", str(build_context / self.parameters.get("dockerfile", "Dockerfile"))]
        for key, value in self.parameters.get("build_args", {}).items():
            cmd += ["--build-arg", f"{key}={value}"]
        cmd.append(str(build_context))
        self.run_command(cmd, context)

        if self.parameters.get("push", True):
            self.run_command(["docker", "push", reference], context)
            inspect = self.run_command(
                ["docker", "inspect", "--format", "{{index .RepoDigests 0}}", reference], context
            )
        else:
            inspect = self.run_command(["docker", "inspect", "--format", "{{.Id}}", reference], context)

        digest = inspect.stdout.strip() or reference
        return StageResult.success(
            artifacts={"image": digest, "tag": reference},
            message=f"Built {reference}",
        )

    def _login(self, context: AdapterContext) -> None:
        username = context.credential(self.parameters.get("username_credential", "DOCKERHUB_USERNAME"))
        password = context.credential(self.parameters.get("password_credential", "DOCKERHUB_TOKEN"))
        cmd = ["docker", "login"]
        if self.parameters.get("registry"):
            cmd.append(self.parameters["registry"])
        cmd += ["-u", username, "--password-stdin"]
        self.run_command(cmd, context, input_text=password)
