from pathlib import Path

from usage_core.client_discovery import (
    OAUTH_MODULE,
    ClientCredentials,
    candidate_source_files,
    discover_client_credentials,
    extract_client_credentials,
    find_cli_install,
)

CONST_SOURCE = """
const OAUTH_CLIENT_ID = '1234-abc.apps.googleusercontent.com';
const OAUTH_CLIENT_SECRET = "GOCSPX-secret";
"""

KEY_SOURCE = """
const client = new OAuth2Client({ client_id: "key-id", "client_secret": 'key-secret' });
"""


def test_extracts_constants() -> None:
    assert extract_client_credentials(CONST_SOURCE) == (
        "1234-abc.apps.googleusercontent.com",
        "GOCSPX-secret",
    )


def test_extracts_object_keys() -> None:
    assert extract_client_credentials(KEY_SOURCE) == ("key-id", "key-secret")


def test_nothing_to_extract() -> None:
    assert extract_client_credentials("module.exports = {};") == (None, None)


def test_find_install_resolves_symlink(tmp_path: Path) -> None:
    real = tmp_path / "lib" / "gemini-cli" / "bin" / "gemini.js"
    real.parent.mkdir(parents=True)
    real.write_text("", encoding="utf-8")
    link = tmp_path / "bin" / "gemini"
    link.parent.mkdir()
    link.symlink_to(real)

    install = find_cli_install(which=lambda name: str(link))

    assert install.binary_path == link
    assert install.resolved_path == real.resolve()
    assert install.lib_dir == real.resolve().parent.parent
    assert install.lib_dir / OAUTH_MODULE in candidate_source_files(install)


def test_find_install_not_on_path() -> None:
    assert find_cli_install(which=lambda name: None) is None


def test_find_install_dangling_link(tmp_path: Path) -> None:
    link = tmp_path / "gemini"
    link.symlink_to(tmp_path / "gone")

    assert find_cli_install(which=lambda name: str(link)) is None


def test_discover_reads_installed_module(tmp_path: Path) -> None:
    lib_dir = tmp_path / "gemini-cli"
    binary = lib_dir / "bin" / "gemini"
    binary.parent.mkdir(parents=True)
    binary.write_text("", encoding="utf-8")
    module = lib_dir / OAUTH_MODULE
    module.parent.mkdir(parents=True)
    module.write_text(CONST_SOURCE, encoding="utf-8")

    found = discover_client_credentials(which=lambda name: str(binary))

    assert found == ClientCredentials(
        "1234-abc.apps.googleusercontent.com", "GOCSPX-secret"
    )


def test_discover_prefers_extra_files(tmp_path: Path) -> None:
    extra = tmp_path / "oauth2.js"
    extra.write_text(KEY_SOURCE, encoding="utf-8")

    found = discover_client_credentials(which=lambda name: None, extra_files=[extra])

    assert found == ClientCredentials("key-id", "key-secret")


def test_discover_returns_none_when_unavailable(tmp_path: Path) -> None:
    empty = tmp_path / "oauth2.js"
    empty.write_text("// nothing here", encoding="utf-8")

    found = discover_client_credentials(
        which=lambda name: None, extra_files=[empty, tmp_path / "missing.js"]
    )

    assert found is None
