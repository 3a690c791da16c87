"""
Tests for the API key stores.
"""

import os
import stat
import sys

import pytest


class TestMemorySecretStore:

    def test_lifecycle(self):
        from scribeloop.errors import SecretNotFound
        from scribeloop.secrets import MemorySecretStore

        store = MemorySecretStore()
        store.save("api_key_groq", b"gsk-1")

        assert store.exists("api_key_groq")
        assert store.retrieve("api_key_groq") == b"gsk-1"

        store.delete("api_key_groq")
        store.delete("api_key_groq")
        assert not store.exists("api_key_groq")
        with pytest.raises(SecretNotFound):
            store.retrieve("api_key_groq")


class TestEnvFileSecretStore:

    def test_save_and_retrieve(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore, api_key_name

        store = EnvFileSecretStore(tmp_path / ".env", environ={})
        store.save(api_key_name("claude"), b"sk-ant-1\n")

        assert (tmp_path / ".env").read_text() == "API_KEY_CLAUDE=sk-ant-1\n"
        assert store.retrieve("api_key_claude") == b"sk-ant-1"
        assert store.exists("api_key_claude")

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_is_private(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore

        store = EnvFileSecretStore(tmp_path / ".env", environ={})
        store.save("api_key_openai", b"sk-1")

        assert stat.S_IMODE(os.stat(tmp_path / ".env").st_mode) == 0o600

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_new_file_is_created_private(self, tmp_path):
        from unittest.mock import patch
        from scribeloop.secrets import EnvFileSecretStore

        store = EnvFileSecretStore(tmp_path / ".env", environ={})
        old_umask = os.umask(0)
        try:
            # Without the chmod the file must still never have been readable by others
            with patch("os.chmod"):
                store.save("api_key_openai", b"sk-1")
        finally:
            os.umask(old_umask)

        assert stat.S_IMODE(os.stat(tmp_path / ".env").st_mode) == 0o600

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_existing_readable_file_is_tightened(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore

        env_file = tmp_path / ".env"
        env_file.write_text("OTHER=1\n")
        os.chmod(env_file, 0o644)

        EnvFileSecretStore(env_file, environ={}).save("api_key_groq", b"gsk-1")

        assert stat.S_IMODE(os.stat(env_file).st_mode) == 0o600
        assert env_file.read_text() == "OTHER=1\nAPI_KEY_GROQ=gsk-1\n"

    def test_other_lines_are_preserved(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore

        env_file = tmp_path / ".env"
        env_file.write_text("# keys\nOTHER=1\nAPI_KEY_GROQ=old\n")

        store = EnvFileSecretStore(env_file, environ={})
        store.save("api_key_groq", b"new")

        assert env_file.read_text() == "# keys\nOTHER=1\nAPI_KEY_GROQ=new\n"

        store.delete("api_key_groq")
        assert env_file.read_text() == "# keys\nOTHER=1\n"
        assert not store.exists("api_key_groq")

    def test_quoted_values(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore

        env_file = tmp_path / ".env"
        env_file.write_text('API_KEY_OPENAI="sk-quoted"\n')

        assert EnvFileSecretStore(env_file, environ={}).retrieve("api_key_openai") == b"sk-quoted"

    def test_environment_takes_precedence(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore

        env_file = tmp_path / ".env"
        env_file.write_text("API_KEY_CLAUDE=from-file\n")

        assert EnvFileSecretStore(env_file, environ={"ANTHROPIC_API_KEY": "alias"}).retrieve("api_key_claude") == b"alias"
        environ = {"ANTHROPIC_API_KEY": "alias", "API_KEY_CLAUDE": "direct"}
        assert EnvFileSecretStore(env_file, environ=environ).retrieve("api_key_claude") == b"direct"

    def test_missing_key(self, tmp_path):
        from scribeloop.errors import SecretNotFound
        from scribeloop.secrets import EnvFileSecretStore

        store = EnvFileSecretStore(tmp_path / ".env", environ={})

        assert not store.exists("api_key_groq")
        with pytest.raises(SecretNotFound, match="set-key"):
            store.retrieve("api_key_groq")
        store.delete("api_key_groq")

    def test_newlines_rejected(self, tmp_path):
        from scribeloop.secrets import EnvFileSecretStore

        store = EnvFileSecretStore(tmp_path / ".env", environ={})

        with pytest.raises(ValueError):
            store.save("api_key_groq", b"line1\nline2")
        assert not (tmp_path / ".env").exists()
