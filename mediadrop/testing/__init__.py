"""Testing module for test mode support."""

from mediadrop.testing.scripted_runner import ScriptedRunner, title_from_url

__all__ = ["ScriptedRunner", "title_from_url"]
