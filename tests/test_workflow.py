"""End-to-end tests for BuildWorkflow with a scripted toolchain"""

import tomllib
from pathlib import Path

import pytest
from fakes import FakeShell
from wasmslim import (
    BudgetConfig,
    BudgetExceededError,
    BuildWorkflow,
    ManifestIoError,
    MemoryCollector,
    PipelineConfig,
    StageFailedError,
    Storage,
    ToolMissingError,
    WorkflowState,
)


UNOPTIMIZED = """\
[package]
name = "app"
version = "0.1.0"

# the browser side
[dependencies]
wasm-bindgen = "0.2"

[profile.release]
opt-level = 3
"""

OPTIMIZED = """\
[package]
name = "core"
version = "0.1.0"

[profile.release]
opt-level = "s"
lto = "fat"
codegen-units = 1
strip = true
panic = "abort"
"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / "Cargo.toml").write_text(UNOPTIMIZED)
    core = tmp_path / "crates" / "core"
    core.mkdir(parents=True)
    (core / "Cargo.toml").write_text(OPTIMIZED)
    return tmp_path


def make_workflow(root, shell=None, storage=None, states=None, **kwds):
    shell = shell or FakeShell(root)
    workflow = BuildWorkflow(
        root, shell=shell, storage=storage, collector=MemoryCollector(), **kwds
    )
    if states is not None:
        transition = workflow.transition

        def record(state):
            states.append(state)
            transition(state)

        workflow.transition = record
    return workflow


def backups(root: Path) -> list[Path]:
    folder = root / ".wasm-slim" / "backups"
    return sorted(folder.iterdir()) if folder.exists() else []


class TestSuccessfulRun:
    def test_optimizes_builds_and_measures(self, project):
        """two manifests, one already optimized: only one is touched"""
        core_before = (project / "crates" / "core" / "Cargo.toml").read_bytes()
        result = make_workflow(project).execute()

        assert len(result.changes) == 5
        assert all(c.startswith("Cargo.toml: ") for c in result.changes)
        assert len(result.backup_files) == 1
        assert backups(project) == result.backup_files
        assert result.backup_files[0].read_text() == UNOPTIMIZED
        assert (project / "crates" / "core" / "Cargo.toml").read_bytes() == core_before
        assert result.metrics.before_bytes == 100_000
        assert result.metrics.after_bytes == 60_000
        assert result.budget_check_passed is None
        assert result.budget_threshold is None
        assert not result.dry_run

    def test_state_sequence(self, project):
        states = []
        workflow = make_workflow(project, states=states)
        workflow.execute(check_budget=True)
        assert states == [
            WorkflowState.MANIFEST_OPTIMIZED,
            WorkflowState.BUILD_EXECUTED,
            WorkflowState.BUDGET_CHECKED,
            WorkflowState.DONE,
        ]
        assert workflow.state == WorkflowState.DONE

    def test_second_run_changes_nothing(self, project):
        make_workflow(project).execute()
        content = (project / "Cargo.toml").read_bytes()
        result = make_workflow(project).execute()
        assert result.changes == []
        assert result.backup_files == []
        assert (project / "Cargo.toml").read_bytes() == content

    def test_nightly_enables_build_std(self, project):
        result = make_workflow(project, shell=FakeShell(project, nightly=True)).execute()
        config = tomllib.loads((project / ".cargo" / "config.toml").read_text())
        assert "build-std" in config["unstable"]
        assert any(c.startswith(".cargo/config.toml: ") for c in result.changes)

    def test_stable_skips_build_std(self, project):
        make_workflow(project).execute()
        assert not (project / ".cargo").exists()

    def test_target_dir_override(self, project):
        shell = FakeShell(project)
        make_workflow(project, shell=shell).execute(target_dir="out")
        cargo = shell.args_for("cargo")
        assert cargo[-2:] == ["--target-dir", str(project / "out")]
        assert (project / "out" / "wasm32-unknown-unknown" / "release" / "app.wasm").exists()

    def test_from_project_reads_config(self, project):
        (project / ".wasm-slim.toml").write_text(
            '[size-budget]\nmax-size-kb = 100\n\n[pipeline]\nwasm-opt = false\n'
        )
        shell = FakeShell(project)
        workflow = BuildWorkflow.from_project(project, shell=shell, collector=MemoryCollector())
        result = workflow.execute(check_budget=True)
        assert "wasm-opt" not in shell.binaries
        assert result.budget_check_passed is True
        assert result.budget_threshold == 100 * 1024


class TestRollback:
    def test_bindgen_failure_restores_manifest(self, project):
        """a failing stage leaves every manifest byte-identical to before"""
        before = (project / "Cargo.toml").read_bytes()
        states = []
        workflow = make_workflow(
            project, shell=FakeShell(project, fail={"wasm-bindgen": 1}), states=states
        )
        with pytest.raises(StageFailedError) as excinfo:
            workflow.execute()
        assert excinfo.value.stage == "wasm-bindgen"
        assert (project / "Cargo.toml").read_bytes() == before
        assert states == [
            WorkflowState.MANIFEST_OPTIMIZED,
            WorkflowState.ROLLED_BACK,
            WorkflowState.FAILED,
        ]
        assert workflow.rollback_failures == []
        # the disk backup outlives the rollback
        assert len(backups(project)) == 1

    def test_created_config_is_removed(self, project):
        shell = FakeShell(project, nightly=True, fail={"cargo": 101})
        with pytest.raises(StageFailedError):
            make_workflow(project, shell=shell).execute()
        assert not (project / ".cargo" / "config.toml").exists()
        assert (project / "Cargo.toml").read_text() == UNOPTIMIZED

    def test_existing_config_is_restored(self, project):
        config = project / ".cargo" / "config.toml"
        config.parent.mkdir()
        config.write_text("# local runner\n[build]\njobs = 4\n")
        shell = FakeShell(project, nightly=True, fail={"wasm-opt": 1})
        with pytest.raises(StageFailedError):
            make_workflow(project, shell=shell).execute()
        assert config.read_text() == "# local runner\n[build]\njobs = 4\n"

    def test_rollback_failure_is_collected(self, project):
        class BreakingShell(FakeShell):
            def cmd(self, args, cwd=".", env=None):
                # replace the manifest with a folder so it cannot be restored
                manifest = self.root / "Cargo.toml"
                manifest.unlink()
                manifest.mkdir()
                super().cmd(args, cwd, env)

        shell = BreakingShell(project, fail={"cargo": 101})
        workflow = make_workflow(project, shell=shell)
        with pytest.raises(StageFailedError):
            workflow.execute()
        assert [path for path, _ in workflow.rollback_failures] == [project / "Cargo.toml"]
        assert workflow.state == WorkflowState.FAILED

    def test_phase_one_failure_rolls_back_earlier_files(self, project):
        (project / "crates" / "core" / "Cargo.toml").write_text(UNOPTIMIZED)
        broken = project / "crates" / "core" / "Cargo.toml"

        class FailingStorage(Storage):
            def write_bytes(self, path, data):
                if Path(path) == broken:
                    raise PermissionError("read-only")
                super().write_bytes(path, data)

        shell = FakeShell(project)
        workflow = make_workflow(project, shell=shell, storage=FailingStorage())
        with pytest.raises(ManifestIoError):
            workflow.execute()
        assert (project / "Cargo.toml").read_text() == UNOPTIMIZED
        assert shell.calls == []
        assert workflow.state == WorkflowState.FAILED

    def test_dry_run_failure_touches_nothing(self, project):
        shell = FakeShell(project, fail={"cargo": 101})
        with pytest.raises(StageFailedError):
            make_workflow(project, shell=shell).execute(dry_run=True)
        assert (project / "Cargo.toml").read_text() == UNOPTIMIZED
        assert backups(project) == []


class TestToolCheck:
    def test_missing_tool_fails_before_mutation(self, project):
        states = []
        shell = FakeShell(project, missing=["wasm-bindgen"])
        workflow = make_workflow(project, shell=shell, states=states)
        with pytest.raises(ToolMissingError):
            workflow.execute()
        assert states == [WorkflowState.FAILED]
        assert (project / "Cargo.toml").read_text() == UNOPTIMIZED
        assert backups(project) == []
        assert shell.calls == []

    def test_required_tools_checked_once(self, project):
        shell = FakeShell(project)
        make_workflow(project, shell=shell).execute()
        assert shell.queries.count(["cargo", "--version"]) == 1
        assert shell.queries.count(["wasm-bindgen", "--version"]) == 1


class TestDryRun:
    def test_preview_without_mutation(self, project):
        shell = FakeShell(project, nightly=True)
        result = make_workflow(project, shell=shell).execute(dry_run=True)
        assert result.dry_run
        assert result.dry_run_files == ["Cargo.toml", ".cargo/config.toml"]
        assert result.changes == []
        assert result.backup_files == []
        assert (project / "Cargo.toml").read_text() == UNOPTIMIZED
        assert not (project / ".cargo").exists()
        assert backups(project) == []
        # the build still runs
        assert shell.binaries == ["cargo", "wasm-bindgen", "wasm-opt"]
        assert result.metrics.after_bytes == 60_000


class TestBudget:
    def run(self, project, final_size, max_kb):
        shell = FakeShell(project, sizes={"wasm-opt": final_size})
        workflow = make_workflow(
            project, shell=shell, budget_config=BudgetConfig(max_size_kb=max_kb)
        )
        return workflow, workflow.execute(check_budget=True)

    def test_exactly_at_limit_passes(self, project):
        _, result = self.run(project, 50 * 1024, 50)
        assert result.budget_check_passed is True
        assert result.budget_threshold == 50 * 1024

    def test_one_byte_over_fails(self, project):
        with pytest.raises(BudgetExceededError) as excinfo:
            self.run(project, 50 * 1024 + 1, 50)
        error = excinfo.value
        assert error.actual == 50 * 1024 + 1
        assert error.maximum == 50 * 1024
        assert error.percent_over == pytest.approx(100 / (50 * 1024))

    def test_failure_keeps_optimized_manifest(self, project):
        with pytest.raises(BudgetExceededError):
            self.run(project, 200_000, 50)
        release = tomllib.loads((project / "Cargo.toml").read_text())["profile"]["release"]
        assert release["lto"] == "fat"

    def test_no_threshold(self, project):
        _, result = self.run(project, 200_000, None)
        assert result.budget_check_passed is None
        assert result.budget_threshold is None

    def test_not_requested(self, project):
        shell = FakeShell(project, sizes={"wasm-opt": 200_000})
        workflow = make_workflow(project, shell=shell, budget_config=BudgetConfig(max_size_kb=1))
        result = workflow.execute()
        assert result.budget_check_passed is None

    def test_zero_maximum_reports_budget_error(self, project):
        with pytest.raises(BudgetExceededError) as excinfo:
            self.run(project, 60_000, 0)
        assert excinfo.value.maximum == 0
        assert excinfo.value.percent_over == float("inf")


def test_pipeline_config_is_used(project):
    shell = FakeShell(project)
    make_workflow(
        project, shell=shell, pipeline_config=PipelineConfig(run_wasm_opt=False, run_wasm_snip=True)
    ).execute()
    assert shell.binaries == ["cargo", "wasm-bindgen", "wasm-snip"]


def test_optimize_build_and_pass_budget(project):
    """one unoptimized and one optimized manifest, 450 KB bundle, 500 KB budget"""
    shell = FakeShell(project, sizes={"wasm-opt": 450 * 1024})
    workflow = make_workflow(
        project, shell=shell, budget_config=BudgetConfig(max_size_kb=500)
    )
    result = workflow.execute(check_budget=True)
    assert result.metrics.after_bytes == 450 * 1024
    assert len(result.changes) == 5
    assert len(result.backup_files) == 1
    assert result.budget_check_passed is True
    assert result.budget_threshold == 500 * 1024
    assert workflow.state == WorkflowState.DONE
