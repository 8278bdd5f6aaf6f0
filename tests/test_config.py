import pytest

from rexa import ScriptRunner, RexaConfig


def test_defaults():
    config = RexaConfig()
    assert config.default_domain == "DEFAULT"
    assert config.fallback_order == ("capability", "remote")
    assert config.dispatch_timeout is None
    assert config.interpolation_pattern == "handlebars"


def test_from_dict_accepts_kebab_case_and_normalises():
    config = RexaConfig.from_dict({
        "fallback-order": ["REMOTE", "capability"],
        "autoload": {"greet": "./lib.py"},
        "dispatch-timeout": "2",
        "yield-interval": "8",
    })
    assert config.fallback_order == ("remote", "capability")
    assert config.autoload == {"GREET": "./lib.py"}
    assert config.dispatch_timeout == 2.0
    assert config.yield_interval == 8


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="colour"):
        RexaConfig.from_dict({"colour": "blue"})


def test_fallback_order_must_name_every_tier():
    with pytest.raises(ValueError):
        RexaConfig(fallback_order=("remote", "remote"))


def test_from_file(tmp_path):
    path = tmp_path / "rexa.yaml"
    path.write_text("default-domain: SHELL\nregistry-url: \"https://reg.test/{{name}}\"\n")
    config = RexaConfig.from_file(str(path))
    assert config.default_domain == "SHELL"
    assert config.registry_url == "https://reg.test/{{name}}"


def test_from_file_needs_a_mapping(tmp_path):
    path = tmp_path / "rexa.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        RexaConfig.from_file(str(path))


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "rexa.yaml"
    path.write_text("interpolation-pattern: shell\nregistry-url: https://file.test\n")
    config = RexaConfig.from_env({
        "REXA_CONFIG": str(path),
        "REXA_REGISTRY_URL": "https://env.test",
        "REXA_DEBUG": "yes",
    })
    assert config.interpolation_pattern == "shell"
    assert config.registry_url == "https://env.test"
    assert config.debug is True


def test_empty_environment_gives_defaults():
    assert RexaConfig.from_env({}) == RexaConfig()


@pytest.mark.asyncio
async def test_runner_uses_configured_interpolation_and_domain():
    runner = ScriptRunner(config=RexaConfig(interpolation_pattern="shell"))
    res = await runner.handle_script('x = 3\nRETURN "${x}" || INTERPOLATION() || ADDRESS()')
    assert res.value == "3shellDEFAULT"
