"""The six-stage improvement pipeline for a single job.

Each stage takes the current job revision, persists every revision it
produces, and hands the newest one to the next stage. Coverage stages are
best effort; any other failure ends the attempt and feeds the retry policy.
"""

import asyncio
from pathlib import Path

import structlog

from improver.core.job import ImprovementJob
from improver.core.ports import (
    CoverageRunner,
    FileCoverage,
    GitClient,
    HostingClient,
    JobStore,
    RepositoryDirectory,
    RepositoryInfo,
    TestGenerator,
    normalize_path,
)
from improver.core.state import STAGE_PROGRESS, Stage
from improver.errors import GenerationFailed, PipelineError
from improver.log import redact
from improver.workspace import WorkspaceManager

logger = structlog.get_logger()

CONTEXT_MANIFESTS = ("package.json", "tsconfig.json", "pyproject.toml", "setup.cfg")
CONTEXT_TEST_DIRS = ("test", "tests", "__tests__", "src/__tests__")
CONTEXT_TEST_SUFFIXES = (".test.ts", ".spec.ts", ".test.js", ".spec.js")
MAX_CONTEXT_TESTS = 20


def _find_coverage(rows: list[FileCoverage], file_path: str) -> FileCoverage | None:
    target = normalize_path(file_path)
    return next((row for row in rows if row.file_path == target), None)


def commit_message(job: ImprovementJob) -> str:
    return (
        f"test: add generated tests for {job.file_path}\n"
        "\n"
        "Generated by the coverage improver.\n"
        f"Job ID: {job.id}"
    )


def pull_request_body(job: ImprovementJob) -> str:
    lines = [
        "## Test coverage improvement",
        "",
        f"This PR adds generated tests for `{job.file_path}`.",
        "",
        "### Job details",
        f"- Job ID: {job.id}",
        f"- Requested by: {job.requested_by}",
        f"- Branch: {job.branch_name}",
    ]
    if job.coverage_before is not None or job.coverage_after is not None:
        before = "n/a" if job.coverage_before is None else f"{job.coverage_before}%"
        after = "n/a" if job.coverage_after is None else f"{job.coverage_after}%"
        lines.append(f"- Line coverage: {before} -> {after}")
    lines += ["", "Please review the generated tests and adjust as needed.", ""]
    return "\n".join(lines)


class JobPipeline:
    """Runs one RUNNING job to SUCCEEDED, RETRY or FAILED."""

    def __init__(
        self,
        store: JobStore,
        repositories: RepositoryDirectory,
        git: GitClient,
        hosting: HostingClient,
        coverage: CoverageRunner,
        generator: TestGenerator,
        workspaces: WorkspaceManager,
        max_attempts: int = 3,
    ):
        self.store = store
        self.repositories = repositories
        self.git = git
        self.hosting = hosting
        self.coverage = coverage
        self.generator = generator
        self.workspaces = workspaces
        self.max_attempts = max_attempts

    async def _save(self, job: ImprovementJob) -> ImprovementJob:
        await asyncio.to_thread(self.store.update, job)
        return job

    async def execute(self, job: ImprovementJob) -> ImprovementJob:
        """Run every stage for a job that already holds its repository lock.

        Never raises for pipeline failures: they end up in the job record.

        Returns:
            The last revision produced
        """
        log = logger.bind(job_id=job.id, repository=job.repository_id, file=job.file_path)
        log.info("Starting job", attempt=job.attempt_count + 1, branch=job.branch_name)

        repository = await asyncio.to_thread(self.repositories.get, job.repository_id)
        if repository is None:
            log.error("Repository not registered")
            return await self._save(job.fail(f"Repository {job.repository_id} not found"))

        workspace: Path | None = None
        try:
            workspace = await asyncio.to_thread(self.workspaces.create, f"job-{job.id}")
            repo_dir = workspace / "repo"

            job = await self._clone(job, repository, repo_dir)
            job = await self._baseline(job, repo_dir)
            job = await self._generate(job, repo_dir)
            job = await self._verify(job, repo_dir)
            job = await self._publish(job, repo_dir)
            job = await self._pull_request(job, repository)
            log.info("Job completed successfully", pr_url=job.pr_url)
        except Exception as e:
            message = redact(str(e)) or type(e).__name__
            log.error("Job failed", error=message, error_type=type(e).__name__)
            try:
                job = await self._save(job.mark_for_retry(message, self.max_attempts))
                log.info("Job failure recorded", status=job.status.value, attempts=job.attempt_count)
            except Exception as persist_error:
                log.error("Failed to record job failure", error=redact(str(persist_error)))
        finally:
            if workspace is not None:
                await asyncio.to_thread(self.workspaces.cleanup, workspace)
        return job

    # ------------------------------------------------------------------ stages

    async def _clone(self, job: ImprovementJob, repository: RepositoryInfo, repo_dir: Path) -> ImprovementJob:
        job = await self._save(job.update_progress(STAGE_PROGRESS[Stage.CLONE], "Cloning repository..."))
        url = self.hosting.authenticated_clone_url(repository.owner, repository.name)
        logger.debug("Cloning", url=self.hosting.safe_clone_url(repository.owner, repository.name))
        await self.git.clone(url, repo_dir)
        return await self._save(job.append_log("Repository cloned successfully"))

    async def _measure(self, repo_dir: Path, file_path: str) -> FileCoverage | None:
        summary = await self.coverage.run(repo_dir)
        return _find_coverage(self.coverage.parse(summary, repo_dir), file_path)

    async def _baseline(self, job: ImprovementJob, repo_dir: Path) -> ImprovementJob:
        job = await self._save(job.update_progress(STAGE_PROGRESS[Stage.BASELINE], "Running baseline coverage..."))
        try:
            row = await self._measure(repo_dir, job.file_path)
        except Exception as e:
            logger.warning("Baseline coverage failed", job_id=job.id, error=redact(str(e)), error_type=type(e).__name__)
            return await self._save(job.append_log(f"Baseline coverage failed (may be no existing tests): {redact(str(e))}"))

        if row is None:
            return await self._save(job.append_log("Baseline coverage captured (target file not in coverage report)"))
        return await self._save(
            job.set_coverage(row.percent, None, f"Baseline coverage for {job.file_path}: {row.percent}%")
        )

    async def _generate(self, job: ImprovementJob, repo_dir: Path) -> ImprovementJob:
        job = await self._save(job.update_progress(STAGE_PROGRESS[Stage.GENERATE], "Generating tests with AI..."))
        context_files = self.gather_context_files(repo_dir, job.file_path)
        job = await self._save(job.append_log(f"Running AI CLI with {len(context_files)} context files"))

        result = await self.generator.generate(repo_dir, job.file_path, context_files)
        if result.failed:
            raise GenerationFailed(f"AI test generation failed: {result.error}")
        if not result.has_changes:
            raise GenerationFailed("AI did not generate any test files")
        return await self._save(job.append_log(f"AI generated tests: {result.summary}"))

    async def _verify(self, job: ImprovementJob, repo_dir: Path) -> ImprovementJob:
        job = await self._save(job.update_progress(STAGE_PROGRESS[Stage.VERIFY], "Verifying tests..."))
        try:
            row = await self._measure(repo_dir, job.file_path)
        except Exception as e:
            logger.warning("Verification coverage failed", job_id=job.id, error=redact(str(e)), error_type=type(e).__name__)
            return await self._save(job.append_log(f"Test verification warning: {redact(str(e))}"))

        if row is None:
            return await self._save(job.append_log("Tests verified (coverage report generated)"))
        return await self._save(
            job.set_coverage(job.coverage_before, row.percent, f"New coverage for {job.file_path}: {row.percent}%")
        )

    async def _publish(self, job: ImprovementJob, repo_dir: Path) -> ImprovementJob:
        job = await self._save(job.update_progress(STAGE_PROGRESS[Stage.PUBLISH], "Committing changes..."))
        if not job.branch_name:
            raise PipelineError("Branch name not set")

        await self.git.checkout_new_branch(repo_dir, job.branch_name)
        await self.git.commit_all(repo_dir, commit_message(job))
        job = await self._save(job.append_log("Changes committed"))

        await self.git.push(repo_dir, job.branch_name)
        return await self._save(job.append_log(f"Changes pushed to branch {job.branch_name}"))

    async def _pull_request(self, job: ImprovementJob, repository: RepositoryInfo) -> ImprovementJob:
        job = await self._save(job.update_progress(STAGE_PROGRESS[Stage.PULL_REQUEST], "Creating pull request..."))
        pr = await self.hosting.create_pull_request(
            repository.owner,
            repository.name,
            head=job.branch_name,
            base=repository.default_branch,
            title=f"Add tests for {job.file_path}",
            body=pull_request_body(job),
        )
        # Visible before completion so a crash here still leaves the PR on record.
        job = await self._save(job.set_pr_url(pr.url, f"Pull request created: {pr.url}"))
        return await self._save(job.succeed(pr.url, "Job completed successfully"))

    # ----------------------------------------------------------------- context

    @staticmethod
    def gather_context_files(repo_dir: Path, target_file: str) -> list[str]:
        """Files handed to the generator next to the target, relative to ``repo_dir``."""
        context: list[str] = []
        target = normalize_path(target_file)
        if (repo_dir / target).is_file():
            context.append(target)

        context += [name for name in CONTEXT_MANIFESTS if (repo_dir / name).is_file()]

        tests: list[str] = []
        for test_dir in CONTEXT_TEST_DIRS:
            directory = repo_dir / test_dir
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                name = entry.name
                is_test = name.endswith(CONTEXT_TEST_SUFFIXES) or (name.startswith("test_") and name.endswith(".py"))
                if is_test and entry.is_file():
                    tests.append(f"{test_dir}/{name}")
        return context + tests[:MAX_CONTEXT_TESTS]
