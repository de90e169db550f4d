import os

import requests

from sitever.plugin import BasePlugin


class WebhookNotifierPlugin(BasePlugin):
    """Example plugin that posts release events to a webhook.

    Does nothing unless ``SITEVER_WEBHOOK_URL`` is set.
    """

    def __init__(self):
        self.url = os.environ.get("SITEVER_WEBHOOK_URL")

    def _post(self, text):
        if not self.url:
            return
        resp = requests.post(self.url, json={"text": text}, timeout=10)
        resp.raise_for_status()

    def on_version_activated(self, version, **kwargs):
        self._post(f"{version.project_id} is now live at v{version.version_number}")

    def on_rollback(self, new_version, target_version, **kwargs):
        self._post(
            f"{new_version.project_id} rolled back to v{target_version.version_number} "
            f"as v{new_version.version_number}"
        )
