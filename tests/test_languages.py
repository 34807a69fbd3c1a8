import pytest

from classjudge.languages import (
    DEFAULT_TEMPLATE,
    LANGUAGES,
    TEMPLATES,
    LanguageProfile,
    LanguageRegistry,
    resolve_filename,
)


def test_every_language_has_a_template():
    assert set(TEMPLATES) == set(LANGUAGES)
    assert DEFAULT_TEMPLATE


def test_compiled_languages():
    compiled = {name for name, profile in LANGUAGES.items() if profile.compiled}
    assert compiled == {"cpp", "c", "java"}


def test_lookup_is_case_insensitive():
    registry = LanguageRegistry(availability={})
    assert registry.get("Python") is LANGUAGES["python"]
    assert registry.get("cobol") is None
    assert registry.get("") is None


def test_java_filename_follows_public_class():
    java = LANGUAGES["java"]
    code = "public class Solution {\n  public static void main(String[] a) {}\n}"
    assert resolve_filename(java, code) == "Solution"
    assert resolve_filename(java, "class Hidden {}") == "Main"


def test_filename_defaults():
    python = LANGUAGES["python"]
    assert resolve_filename(python, "print(1)") == "main"
    assert resolve_filename(python, "print(1)", "solution") == "solution"


def test_describe_reports_availability_and_guidance():
    registry = LanguageRegistry(availability={"python": True})
    described = {entry["value"]: entry for entry in registry.describe()}

    assert set(described) == set(LANGUAGES)
    assert all(entry["supported"] for entry in described.values())
    assert described["python"]["available"] is True
    assert described["python"]["install_instructions"] is None
    assert described["cpp"]["available"] is False
    assert "G++" in described["cpp"]["install_instructions"]
    assert described["cpp"]["compiled"] is True


def test_unprobed_registry_reports_nothing_available():
    registry = LanguageRegistry()
    assert not any(registry.is_available(name) for name in registry.names())


@pytest.mark.asyncio
async def test_probe_marks_missing_tool_unavailable():
    profile = LanguageProfile(
        name="ghost",
        display_name="Ghost",
        extension=".ghost",
        run_command=("ghost-runtime-that-does-not-exist", "{src}"),
        probe_commands=(("ghost-runtime-that-does-not-exist", "--version"),),
        install_instructions="Install ghost.",
    )
    registry = LanguageRegistry(profiles=[profile])

    await registry.ensure_probed()

    assert registry.is_available("ghost") is False
    assert registry.status() == {"ghost-runtime-that-does-not-exist": False}
