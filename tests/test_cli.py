import pytest
from click.testing import CliRunner

from slab import cli
from slab.errors import TransportError
from slab.llm import ModelInfo


class FakeClient:
    def __init__(self, response: str = "", models=(), error: Exception | None = None):
        self.response = response
        self.models = list(models)
        self.error = error
        self.used_model = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def stream_chat(self, model, messages, options=None):
        self.used_model = model
        if self.error is not None:
            raise self.error
        yield self.response

    async def chat(self, model, messages, options=None):
        self.used_model = model
        return self.response

    async def list_models(self):
        if self.error is not None:
            raise self.error
        return [ModelInfo(name=name) for name in self.models]


@pytest.fixture
def runner(project, isolated_home):
    return CliRunner()


@pytest.fixture
def fake_client(monkeypatch):
    def install(client: FakeClient) -> FakeClient:
        monkeypatch.setattr(cli, "_client", lambda config: client)
        return client

    return install


class TestInit:
    def test_creates_project_layout(self, runner, project):
        result = runner.invoke(cli.main, ["init"])

        assert result.exit_code == 0, result.output
        base = project / ".slab"
        assert (base / "config.toml").exists()
        assert (base / "rules" / "conventions.md").exists()
        assert (base / "templates" / "code_review.yaml").exists()
        assert (base / "sessions").is_dir()

    def test_keeps_existing_files(self, runner, project):
        (project / ".slab" / "config.toml").write_text("default_model = 'mine'\n")
        (project / ".slab" / "rules").mkdir()
        (project / ".slab" / "rules" / "own.md").write_text("mine")

        result = runner.invoke(cli.main, ["init"])

        assert "Keeping existing" in result.output
        assert (project / ".slab" / "config.toml").read_text() == "default_model = 'mine'\n"
        assert not (project / ".slab" / "rules" / "conventions.md").exists()


class TestTemplatesCommand:
    def test_lists_defaults_and_project_templates(self, runner, project):
        templates_dir = project / ".slab" / "templates"
        templates_dir.mkdir()
        (templates_dir / "lint.yaml").write_text("name: lint\ncommand: /lint\ndescription: Lint it\nprompt: Lint.\n")

        result = runner.invoke(cli.main, ["templates"])

        assert result.exit_code == 0
        assert "/review" in result.output
        assert "/lint" in result.output


class TestModelsCommand:
    def test_lists_models(self, runner, fake_client):
        fake_client(FakeClient(models=["llama3", "qwen"]))

        result = runner.invoke(cli.main, ["models"])

        assert result.exit_code == 0
        assert "llama3" in result.output
        assert "qwen" in result.output

    def test_unreachable(self, runner, fake_client):
        fake_client(FakeClient(error=TransportError("Connection refused")))

        result = runner.invoke(cli.main, ["models"])

        assert result.exit_code == 1
        assert "Connection refused" in result.output


class TestAsk:
    def test_prints_answer(self, runner, fake_client):
        client = fake_client(FakeClient("The answer is 42."))

        result = runner.invoke(cli.main, ["ask", "-m", "llama3", "what is it?"])

        assert result.exit_code == 0, result.output
        assert "The answer is 42." in result.output
        assert client.used_model == "llama3"

    def test_picks_first_installed_model(self, runner, fake_client):
        client = fake_client(FakeClient("ok", models=["first", "second"]))

        result = runner.invoke(cli.main, ["ask", "hi"])

        assert result.exit_code == 0
        assert client.used_model == "first"

    def test_file_changes_need_apply(self, runner, fake_client, project):
        fake_client(FakeClient("```python:made.py\nx = 1\n```"))

        runner.invoke(cli.main, ["ask", "-m", "m", "make it"])
        assert not (project / "made.py").exists()

        result = runner.invoke(cli.main, ["ask", "-m", "m", "--apply", "make it"])
        assert result.exit_code == 0
        assert (project / "made.py").read_text() == "x = 1\n"
        assert "applied" in result.output

    def test_error_exit_code(self, runner, fake_client):
        fake_client(FakeClient(error=TransportError("dropped")))

        result = runner.invoke(cli.main, ["ask", "-m", "m", "hi"])

        assert result.exit_code == 1
        assert "dropped" in result.output

    def test_invalid_config(self, runner, project):
        (project / ".slab" / "config.toml").write_text("context_limit = -1\n")

        result = runner.invoke(cli.main, ["ask", "-m", "m", "hi"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output
