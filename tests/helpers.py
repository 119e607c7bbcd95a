"""
Shared test doubles and page builders.
"""

from eventsync.fetchers import BaseFetcher, FetchResult


class StaticFetcher(BaseFetcher):
    """
    Fetcher replaying a scripted sequence of results or exceptions.

    The last item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    async def fetch(self, url, strategy_config, timeout_ms):
        self.calls.append(url)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item


def html_result(body, status=200, url="https://www.shmarathon.com/race"):
    return FetchResult(status=status, body=body, content_type="text/html; charset=utf-8", url=url)


def json_result(body, status=200, url="https://api.racehub.example/events/42"):
    return FetchResult(status=status, body=body, content_type="application/json", url=url)


def race_page(race_date="2025-11-30", status_text="报名中"):
    return (
        "<html><body>"
        f'<div class="race-date">{race_date}</div>'
        f'<span class="reg-status">{status_text}</span>'
        "</body></html>"
    )
