import json
import re

from app.rewrite.client_scripts import (
    BEHAVIOUR_SCRIPT_ID,
    BOOT_SCRIPT_ID,
    behaviour_script,
    behaviour_settings,
    boot_script,
    worker_prologue,
)


def embedded_json(script, name):
    match = re.search(r"var " + name + r" = (\{.*?\});\n", script)
    assert match, f"{name} not found"
    return json.loads(match.group(1))


class TestBootScript:
    def test_rules_come_from_the_classifier(self, classifier):
        script = boot_script(classifier)
        assert f'<script id="{BOOT_SCRIPT_ID}">' in script
        assert embedded_json(script, "R") == classifier.client_rules()

    def test_patches_page_entry_points(self, classifier):
        script = boot_script(classifier)
        for hook in ("G.Worker = PW", "G.SharedWorker = PSW", "G.fetch = function", "XMLHttpRequest.prototype.open = function"):
            assert hook in script

    def test_single_script_element(self, classifier):
        script = boot_script(classifier)
        assert script.count("</script>") == 1


class TestWorkerPrologue:
    def test_patches_worker_scope(self, classifier):
        prologue = worker_prologue(classifier)
        assert "G.importScripts = function" in prologue
        assert "G.fetch = function" in prologue
        assert "<script" not in prologue
        assert embedded_json(prologue, "R")["relayPrefix"] == "/__x"


class TestBehaviourScript:
    def test_settings(self, site_config):
        settings = behaviour_settings(site_config)
        assert settings["anchorAttempts"] == 80
        assert settings["anchorRetryMs"] == 100
        assert settings["sweepMs"] == 700
        assert settings["publicOrigin"] == "https://www.example.com"

    def test_values_cannot_close_the_script(self, site_config):
        config = site_config.model_copy(update={"favicon_url": "/x</script><script>alert(1)"})
        script = behaviour_script(config)
        assert f'<script id="{BEHAVIOUR_SCRIPT_ID}">' in script
        assert script.count("</script>") == 1
        assert embedded_json(script, "C")["faviconUrl"] == "/x</script><script>alert(1)"
