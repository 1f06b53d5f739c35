import asyncio

import pytest

from slab.errors import ModelNotFoundError, OverBudgetError, TemplateError, TransportError
from slab.fileops.engine import ApplyStatus, Decision
from slab.llm import ModelInfo
from slab.phases import PhaseSpec, StopReason
from slab.session import Session, SessionUI
from slab.session.loop import INCOMPLETE_MARKER
from slab.shell import ShellResult, run_shell
from slab.templates import PromptTemplate, TemplateVariable


class FakeBackend:
    """Scripted model: each response is a string, a list of chunks, or an exception.

    An exception inside a chunk list is raised after the preceding chunks.
    """

    def __init__(self, *responses, models=()):
        self.responses = list(responses)
        self.models = list(models)
        self.requests: list[list[dict]] = []
        self.started = asyncio.Event()
        self.list_calls = 0

    async def stream_chat(self, model, messages, options=None):
        self.requests.append(messages)
        self.started.set()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            response = [response]
        for chunk in response:
            if isinstance(chunk, Exception):
                raise chunk
            if chunk is None:
                await asyncio.sleep(60)
                continue
            yield chunk

    async def chat(self, model, messages, options=None):
        self.requests.append(messages)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else "".join(response)

    async def list_models(self):
        self.list_calls += 1
        return [ModelInfo(name=name) for name in self.models]


class RecordingUI(SessionUI):
    def __init__(self, decision=Decision.SKIP, confirm=False, exec_choice=None, continue_phases=True):
        self.decision = decision
        self._confirm = confirm
        self.exec_choice = exec_choice or []
        self._continue = continue_phases
        self.chunks: list[str] = []
        self.applied = []
        self.phase_runs = []
        self.follow_ups: list[str] = []
        self.exec_results: list[ShellResult] = []

    def on_chunk(self, text):
        self.chunks.append(text)

    def decide(self, item):
        return self.decision

    def confirm(self, item):
        return self._confirm

    def on_applied(self, results):
        self.applied.extend(results)

    def choose_exec(self, commands):
        return self.exec_choice

    def on_exec(self, result):
        self.exec_results.append(result)

    def on_phase_run(self, run):
        self.phase_runs.append(run)

    def continue_phases(self, number):
        return self._continue

    def on_follow_up(self, message):
        self.follow_ups.append(message)


def make_runner(*results: tuple[int, str]):
    scripted = list(results)
    calls = []

    async def runner(command, cwd=None, timeout=None):
        calls.append((command, cwd))
        exit_code, stdout = scripted.pop(0)
        return ShellResult(command, exit_code, stdout)

    runner.calls = calls
    return runner


def make_slow_runner():
    """Real shell runner that flags when a `sleep` command has started."""
    started = asyncio.Event()

    async def runner(command, cwd=None, timeout=None):
        if "sleep" in command:
            started.set()
        return await run_shell(command, cwd=cwd, timeout=timeout)

    runner.started = started
    return runner


def roles(session: Session) -> list[str]:
    return [t.role for t in session.context.history]


class TestRunTurn:
    @pytest.mark.asyncio
    async def test_streams_and_records_both_turns(self, config):
        backend = FakeBackend(["Hel", "lo"])
        ui = RecordingUI()
        session = Session(config, backend, ui)

        result = await session.run_turn("hi")

        assert result.ok
        assert result.assistant == "Hello"
        assert ui.chunks == ["Hel", "lo"]
        assert roles(session) == ["user", "assistant"]
        messages = backend.requests[0]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "hi"}

    @pytest.mark.asyncio
    async def test_non_streaming(self, config):
        config.ui.streaming = False
        backend = FakeBackend("whole answer")
        ui = RecordingUI()
        session = Session(config, backend, ui)

        result = await session.run_turn("hi")

        assert result.assistant == "whole answer"
        assert ui.chunks == []

    @pytest.mark.asyncio
    async def test_history_is_sent_on_next_turn(self, config):
        backend = FakeBackend("one", "two")
        session = Session(config, backend)

        await session.run_turn("first")
        await session.run_turn("second")

        contents = [m["content"] for m in backend.requests[1][1:]]
        assert contents == ["first", "one", "second"]

    @pytest.mark.asyncio
    async def test_without_model(self, config):
        backend = FakeBackend("unused")
        session = Session(config, backend)
        session.model = None

        result = await session.run_turn("hi")

        assert isinstance(result.error, ValueError)
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_over_budget_is_not_sent(self, config):
        config.context_limit = 10
        backend = FakeBackend("unused")
        session = Session(config, backend)

        result = await session.run_turn("hi")

        assert isinstance(result.error, OverBudgetError)
        assert backend.requests == []
        assert session.context.history == []

    @pytest.mark.asyncio
    async def test_cancel_discards_turn(self, config):
        backend = FakeBackend(["partial", None])
        session = Session(config, backend)

        task = asyncio.create_task(session.run_turn("hi"))
        await backend.started.wait()
        await asyncio.sleep(0)
        assert session.cancel() is True
        result = await task

        assert result.cancelled
        assert not result.ok
        assert session.context.history == []
        assert session.cancel() is False

    @pytest.mark.asyncio
    async def test_transport_failure_keeps_partial(self, config):
        backend = FakeBackend(["Hel", TransportError("connection reset")])
        session = Session(config, backend)

        result = await session.run_turn("hi")

        assert isinstance(result.error, TransportError)
        assert result.incomplete
        assert result.assistant == "Hel"
        assert session.context.history[-1].content == "Hel" + INCOMPLETE_MARKER
        assert roles(session) == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_transport_failure_without_output_records_nothing(self, config):
        backend = FakeBackend(TransportError("refused"))
        session = Session(config, backend)

        result = await session.run_turn("hi")

        assert isinstance(result.error, TransportError)
        assert not result.incomplete
        assert session.context.history == []

    @pytest.mark.asyncio
    async def test_model_not_found(self, config):
        backend = FakeBackend(ModelNotFoundError("test-model"))
        session = Session(config, backend)

        result = await session.run_turn("hi")

        assert isinstance(result.error, ModelNotFoundError)
        assert session.context.history == []

    @pytest.mark.asyncio
    async def test_watch_refreshes_tracked_files(self, config, make_file):
        path = make_file("a.py", "v1")
        backend = FakeBackend("ok")
        session = Session(config, backend)
        session.context.add_file(path)
        session.context.watch = True
        path.write_text("v2")

        result = await session.run_turn("hi")

        assert result.refreshed.refreshed == [path]
        assert "v2" in backend.requests[0][0]["content"]


class TestFileOperations:
    RESPONSE = "Here you go:\n```python:new.py\nprint(1)\n```\n"

    @pytest.mark.asyncio
    async def test_skipped_by_default(self, config, project):
        session = Session(config, FakeBackend(self.RESPONSE))

        result = await session.run_turn("make a file")

        assert [r.status for r in result.operations] == [ApplyStatus.SKIPPED]
        assert not (project / "new.py").exists()

    @pytest.mark.asyncio
    async def test_accepted(self, config, project):
        ui = RecordingUI(decision=Decision.ACCEPT)
        session = Session(config, FakeBackend(self.RESPONSE), ui)

        result = await session.run_turn("make a file")

        assert result.operations[0].ok
        assert (project / "new.py").read_text() == "print(1)\n"
        assert ui.applied == result.operations

    @pytest.mark.asyncio
    async def test_auto_apply(self, config, project):
        config.ui.auto_apply_file_ops = True
        session = Session(config, FakeBackend(self.RESPONSE))

        await session.run_turn("make a file")

        assert (project / "new.py").exists()

    @pytest.mark.asyncio
    async def test_disabled(self, config, project):
        session = Session(config, FakeBackend(self.RESPONSE), RecordingUI(decision=Decision.ACCEPT))
        session.file_ops_enabled = False

        result = await session.run_turn("make a file")

        assert result.operations == []
        assert not (project / "new.py").exists()

    @pytest.mark.asyncio
    async def test_tracked_file_follows_edit_and_rollback(self, config, make_file):
        path = make_file("app.py", "old\n")
        response = "```python:app.py\nnew\n```"
        session = Session(config, FakeBackend(response), RecordingUI(decision=Decision.ACCEPT))
        session.context.add_file(path)

        await session.run_turn("update it")

        assert session.context.files[path].content == "new\n"

        assert session.rollback("app.py") is True
        assert path.read_text() == "old\n"
        assert session.context.files[path].content == "old\n"
        assert session.rollback("app.py") is False

    @pytest.mark.asyncio
    async def test_deleted_file_leaves_context(self, config, make_file):
        path = make_file("old.py", "x\n")
        session = Session(config, FakeBackend("DELETE: old.py"), RecordingUI(decision=Decision.ACCEPT))
        session.context.add_file(path)

        await session.run_turn("remove it")

        assert not path.exists()
        assert not session.context.has_file(path)


class TestExec:
    @pytest.mark.asyncio
    async def test_exec_records_output(self, config, project):
        runner = make_runner((0, "3 passed\n"))
        session = Session(config, FakeBackend(), runner=runner)

        result = await session.exec("pytest -q")

        assert result.ok
        assert runner.calls == [("pytest -q", project)]
        turn = session.context.history[-1]
        assert turn.role == "user"
        assert "$ pytest -q" in turn.content
        assert "3 passed" in turn.content

    @pytest.mark.asyncio
    async def test_exec_blocks_run_only_when_chosen(self, config):
        response = "```exec\nmake test\n```\n```run\nmake lint\n```"
        runner = make_runner((0, "ok"))
        ui = RecordingUI(exec_choice=[1])
        session = Session(config, FakeBackend(response), ui, runner=runner)

        result = await session.run_turn("check")

        assert [c for c, _ in runner.calls] == ["make lint"]
        assert [r.command for r in result.exec_results] == ["make lint"]
        assert ui.exec_results == result.exec_results

    @pytest.mark.asyncio
    async def test_exec_blocks_skipped_by_default(self, config):
        runner = make_runner()
        session = Session(config, FakeBackend("```exec\nrm -rf build\n```"), runner=runner)

        result = await session.run_turn("clean")

        assert result.exec_results == []
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_cancel_kills_running_command(self, config):
        runner = make_slow_runner()
        session = Session(config, FakeBackend(), runner=runner)

        task = asyncio.create_task(session.exec("sleep 30"))
        await runner.started.wait()
        await asyncio.sleep(0.2)
        assert session.cancel() is True
        result = await asyncio.wait_for(task, 5)

        assert result is None
        assert session.context.history == []
        assert session.cancel() is False


def make_template(**overrides) -> PromptTemplate:
    fields = dict(
        name="fixit",
        command="/fixit",
        prompt="Fix {{issue}}",
        variables=[TemplateVariable(name="issue")],
        phases=[PhaseSpec(name="check", run="make check")],
        max_phases=3,
    )
    fields.update(overrides)
    return PromptTemplate(**fields)


class TestTemplates:
    @pytest.mark.asyncio
    async def test_template_turn_is_shortened_in_history(self, config):
        backend = FakeBackend("done")
        session = Session(config, backend)

        result = await session.run_template(make_template(phases=[]), ["the", "bug"])

        assert result.ok
        assert backend.requests[0][-1]["content"] == "Fix the bug"
        assert session.context.history[0].content == "[Used /fixit template]"
        assert result.phase_outcome is None

    @pytest.mark.asyncio
    async def test_phase_loop_sends_follow_up_until_passing(self, config):
        backend = FakeBackend("attempt 1", "attempt 2")
        runner = make_runner((1, "error: missing semicolon\n"), (0, ""))
        ui = RecordingUI()
        session = Session(config, backend, ui, runner=runner)

        result = await session.run_template(make_template(), ["it"])

        assert result.phase_outcome.reason == StopReason.PASSED
        assert len(result.follow_ups) == 1
        assert len(result.phase_runs) == 2
        assert len(ui.phase_runs) == 2
        follow_up = backend.requests[1][-1]["content"]
        assert follow_up.startswith("[Phase results - pass 1]")
        assert "missing semicolon" in follow_up
        assert ui.follow_ups == [follow_up]
        assert session.phase_loop is None

    @pytest.mark.asyncio
    async def test_declined_phase_loop(self, config):
        backend = FakeBackend("attempt 1")
        runner = make_runner((1, "bad"))
        session = Session(config, backend, RecordingUI(continue_phases=False), runner=runner)

        result = await session.run_template(make_template(), ["it"])

        assert result.phase_outcome.reason == StopReason.DECLINED
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_failed_follow_up_aborts_loop(self, config):
        backend = FakeBackend("attempt 1", TransportError("gone"))
        runner = make_runner((1, "bad"), (0, ""))
        session = Session(config, backend, runner=runner)

        result = await session.run_template(make_template(), ["it"])

        assert isinstance(result.error, TransportError)
        assert result.phase_outcome is None
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_phase_command(self, config, project):
        backend = FakeBackend("```python:new.py\nprint(1)\n```\n")
        runner = make_slow_runner()
        session = Session(config, backend, RecordingUI(decision=Decision.ACCEPT), runner=runner)
        template = make_template(
            phases=[PhaseSpec(name="quick", run="exit 1"), PhaseSpec(name="slow", run="sleep 30")],
        )

        task = asyncio.create_task(session.run_template(template, ["it"]))
        await runner.started.wait()
        await asyncio.sleep(0.2)
        assert session.cancel() is True
        result = await asyncio.wait_for(task, 5)

        assert result.cancelled
        assert result.operations[0].ok
        assert (project / "new.py").exists()
        assert result.phase_outcome.reason == StopReason.CANCELLED
        assert [run.spec.name for run in result.phase_runs] == ["quick"]
        assert len(backend.requests) == 1
        assert session.phase_loop is None

    @pytest.mark.asyncio
    async def test_render_error(self, config):
        session = Session(config, FakeBackend())

        result = await session.run_template(make_template(prompt="{{file:missing.txt}}", phases=[]), [])

        assert isinstance(result.error, TemplateError)

    @pytest.mark.asyncio
    async def test_plain_turn_with_phase_loop(self, config):
        backend = FakeBackend("ok")
        runner = make_runner((0, ""))
        session = Session(config, backend, runner=runner)
        loop = session.phase_loop_for(make_template())

        result = await session.run_turn("hi", phases=loop)

        assert result.phase_outcome.reason == StopReason.PASSED
        assert runner.calls[0][0] == "make check"


class TestModelsAndPersistence:
    @pytest.mark.asyncio
    async def test_models_are_cached(self, config):
        backend = FakeBackend(models=["llama3", "qwen"])
        session = Session(config, backend)

        await session.available_models()
        await session.available_models()
        assert backend.list_calls == 1

        await session.available_models(refresh=True)
        assert backend.list_calls == 2
        assert session.completions.models == ["llama3", "qwen"]

    def test_set_model_uses_model_system_prompt(self, config):
        config.models = {"coder": {"system_prompt": "Be terse."}}
        session = Session(config, FakeBackend())

        session.set_model("coder")

        assert session.model == "coder"
        assert session.context.system_prompt == "Be terse."

    @pytest.mark.asyncio
    async def test_save_and_load(self, config, make_file):
        path = make_file("a.py", "x")
        session = Session(config, FakeBackend("reply"))
        session.context.add_file(path)
        await session.run_turn("question")

        session.save("work")

        fresh = Session(config, FakeBackend())
        missing = fresh.load("work")

        assert missing == []
        assert fresh.model == "test-model"
        assert fresh.context.display_paths() == ["a.py"]
        assert [t.content for t in fresh.context.history] == ["question", "reply"]
        assert fresh.store.load_last().name == "work"

    def test_restore_reports_missing_files(self, config, make_file):
        path = make_file("gone.py", "x")
        session = Session(config, FakeBackend())
        session.context.add_file(path)
        saved = session.snapshot("s")
        path.unlink()

        assert session.restore(saved) == ["gone.py"]
        assert session.context.files == {}

    def test_export(self, config, project):
        session = Session(config, FakeBackend())
        session.context.add_turn("user", "hello")

        out = session.export(project / "chat.md")

        text = out.read_text()
        assert text.startswith("# slab session: chat")
        assert "## User\n\nhello" in text

    def test_sync_completions(self, config, make_file, project):
        make_file("a.py", "x")
        rules_dir = project / ".slab" / "rules"
        rules_dir.mkdir()
        (rules_dir / "style.md").write_text("Be consistent.")
        session = Session(config, FakeBackend())
        session.context.add_file("a.py")
        session.save("one")

        source = session.sync_completions()

        assert source.context_files == ["a.py"]
        assert source.rules == ["style"]
        assert source.sessions == ["one"]
