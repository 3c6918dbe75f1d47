"""Interactive questions, answered by scripted prompts."""

import pytest

from agentvps import wizard
from agentvps.config import FEATURES, Configuration
from agentvps.wizard import WizardCancelled, ask_token, ask_username, choose, run_wizard


class Answers:
    """Stand-in for ``Prompt.ask``/``Confirm.ask``: pops scripted answers,
    falling back to the prompt's default when the script runs out."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.questions = []

    def __call__(self, question, **kwargs):
        self.questions.append(question)
        if self.answers:
            return self.answers.pop(0)
        return kwargs.get("default")


@pytest.fixture
def prompt(monkeypatch):
    answers = Answers()
    monkeypatch.setattr(wizard.Prompt, "ask", answers)
    return answers


@pytest.fixture
def confirm(monkeypatch):
    answers = Answers()
    monkeypatch.setattr(wizard.Confirm, "ask", answers)
    return answers


def test_ask_token_reprompts_until_valid(prompt):
    prompt.answers = ["", "bad-token", "good-token"]
    checked = []

    def validate(token):
        checked.append(token)
        return token == "good-token"

    assert ask_token("", validate) == "good-token"
    assert checked == ["bad-token", "good-token"]


def test_ask_token_keeps_valid_current_token(prompt):
    assert ask_token("env-token", lambda token: True) == "env-token"
    assert prompt.questions == []


def test_ask_token_replaces_rejected_current_token(prompt):
    prompt.answers = ["new-token"]

    assert ask_token("stale-token", lambda token: token == "new-token") == "new-token"
    assert len(prompt.questions) == 1


def test_choose_maps_default_to_its_number(monkeypatch):
    seen = {}

    def ask(question, **kwargs):
        seen.update(kwargs)
        return kwargs["default"]

    monkeypatch.setattr(wizard.Prompt, "ask", ask)

    assert choose("Location", {"ash": "US East", "hil": "US West", "nbg1": "Europe"}, "nbg1") == "nbg1"
    assert seen["default"] == "3"
    assert seen["choices"] == ["1", "2", "3"]


def test_choose_returns_picked_option(prompt):
    prompt.answers = ["2"]

    assert choose("Size", {"cpx11": "small", "cpx21": "medium"}, "cpx11") == "cpx21"


def test_choose_unknown_default_falls_back_to_first(monkeypatch):
    monkeypatch.setattr(wizard.Prompt, "ask", lambda question, **kwargs: kwargs["default"])

    assert choose("Size", {"cpx11": "small", "cpx21": "medium"}, "cx22") == "cpx11"


def test_ask_username_rejects_invalid_names(prompt):
    prompt.answers = ["Root", "1abc", "dev"]

    assert ask_username("ubuntu") == "dev"
    assert len(prompt.questions) == 3


class FakeProvider:
    def __init__(self, token):
        self.token = token

    def validate_auth(self):
        return self.token == "tok"


def test_run_wizard_applies_answers(monkeypatch, prompt, confirm):
    monkeypatch.setattr(wizard, "HetznerProvider", FakeProvider)
    prompt.answers = ["3", "4", "dev"]
    # one answer per feature toggle, then the final confirmation
    confirm.answers = [name == "install_tailscale" for name, _, _ in FEATURES] + [True]

    config = run_wizard(Configuration(hetzner_token="tok"))

    assert config.hetzner_token == "tok"
    assert config.server_type == "cpx31"
    assert config.location == "hel1"
    assert config.user == "dev"
    assert config.install_tailscale is True
    assert config.install_docker is False
    assert config.enabled_features() == ["Tailscale"]


def test_run_wizard_keeps_defaults(monkeypatch, prompt, confirm):
    monkeypatch.setattr(wizard, "HetznerProvider", FakeProvider)
    start = Configuration(hetzner_token="tok", user="dev", location="nbg1")

    assert run_wizard(start) == start


def test_declining_summary_cancels(monkeypatch, prompt, confirm):
    monkeypatch.setattr(wizard, "HetznerProvider", FakeProvider)
    confirm.answers = [False] * len(FEATURES) + [False]

    with pytest.raises(WizardCancelled):
        run_wizard(Configuration(hetzner_token="tok"))
