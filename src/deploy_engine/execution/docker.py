"""Image build/push: the local docker build platform and the build step.

Success for an image step is a pushed, content-addressed reference
(``registry/repository@sha256:...``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..ports.step_executor import StepOutcome
from ..primitives.exceptions import DeployEngineError, StepExecutionError
from .classification import classify_failure
from .process import DEFAULT_KILL_GRACE_PERIOD, run_command

if TYPE_CHECKING:
    from ..config import ToolSettings
    from ..models import ContainerImage, DeploymentOption, ImageBuild
    from ..ports.providers import IBuildPlatform, IContainerRegistry
    from ..ports.step_executor import ExecutionContext
    from .base import CommandRunner
    from .process import CommandResult

logger = logging.getLogger("deploy_engine.docker")


class LocalDockerBuildPlatform:
    """Builds with the local docker daemon."""

    tool = "docker"

    def __init__(
        self,
        *,
        binary: str = "docker",
        timeout: float | None = None,
        kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
        runner: CommandRunner | None = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self.kill_grace_period = kill_grace_period
        self._runner: CommandRunner = runner or run_command

    @classmethod
    def from_settings(
        cls, tools: ToolSettings, *, runner: CommandRunner | None = None
    ) -> LocalDockerBuildPlatform:
        return cls(
            binary=tools.docker_binary,
            timeout=tools.command_timeout,
            kill_grace_period=tools.kill_grace_period,
            runner=runner,
        )

    async def _docker(self, ctx: ExecutionContext, *args: str) -> CommandResult:
        result = await self._runner(
            [self.binary, *args],
            cwd=ctx.working_dir,
            env={"DOCKER_BUILDKIT": "1", **ctx.tool_env()},
            token=ctx.token,
            timeout=self.timeout,
            kill_grace_period=self.kill_grace_period,
        )
        if not result.success:
            raise classify_failure(self.tool, result)
        return result

    async def build(self, build: ImageBuild, ctx: ExecutionContext) -> None:
        args = ["build", "--tag", build.image.reference]
        if build.dockerfile is not None:
            args.extend(["--file", str(build.dockerfile)])
        for key, value in sorted(build.build_args.items()):
            args.extend(["--build-arg", f"{key}={value}"])
        if build.target:
            args.extend(["--target", build.target])
        args.append(str(build.context_dir))
        await self._docker(ctx, *args)

    async def push(self, image: ContainerImage, ctx: ExecutionContext) -> str:
        await self._docker(ctx, "push", image.reference)
        inspected = await self._docker(
            ctx,
            "image",
            "inspect",
            "--format",
            "{{index .RepoDigests 0}}",
            image.reference,
        )
        return parse_digest(inspected.stdout_text)


class ImageBuildStep:
    """Ensure the repository, build unless present, push, report the digest."""

    def __init__(
        self,
        build: ImageBuild,
        registry: IContainerRegistry,
        platform: IBuildPlatform,
        option: DeploymentOption,
    ) -> None:
        self.build = build
        self.registry = registry
        self.platform = platform
        self.option = option

    @property
    def name(self) -> str:
        return f"image-build:{self.build.image.repository}:{self.build.image.tag}"

    async def execute(self, ctx: ExecutionContext) -> StepOutcome:
        image = self.build.image
        if ctx.token.is_cancelled:
            return StepOutcome.cancelled(ctx.token.reason)
        try:
            await self.registry.ensure_repository(image.repository)
            exists = await self.registry.image_exists(image)
            if exists and not (self.option.force_build or self.option.force_push):
                logger.info("Image %s already exists, skipping build", image.reference)
                return StepOutcome.succeeded(image.reference)
            if ctx.dry_run:
                return StepOutcome.succeeded(image.reference)

            await self.platform.build(self.build, ctx)
            digest = await self.platform.push(image, ctx)
        except DeployEngineError as exc:
            logger.warning("%s failed: %s", self.name, exc)
            return StepOutcome.from_exception(exc)

        reference = image.with_digest(digest)
        logger.info("Pushed %s", reference)
        return StepOutcome.succeeded(reference)


def parse_digest(repo_digest: str) -> str:
    """``repo@sha256:abc`` → ``sha256:abc``."""
    _, sep, digest = repo_digest.strip().partition("@")
    if not sep or not digest.startswith("sha256:"):
        raise StepExecutionError(
            f"no content digest in docker output: {repo_digest!r}", tool="docker"
        )
    return digest
