import argparse
import asyncio
from pathlib import Path

from pydantic import ValidationError

from services.error import catch_and_log  # import installs the global excepthook
import services.logger as log
import services.media as media
import services.util as u
import services.config_io as config_io
from services.config_schema import AppConfig
from services.dispatcher import LinkAnalysisPlugin
from services.http import HttpClient
from drivers.napcat import NapCatDriver
from resolvers import registry

l = log.get_logger()

# Config keys whose values are credentials and must never reach the log.
# Matched as substrings against lower-cased key names.
_SENSITIVE_KEY_PATTERNS = ("token", "secret", "password", "cookie")


def _collect_sensitive(obj, found: set[str]) -> None:
    """Recursively extract sensitive string values from the config dict."""
    if isinstance(obj, dict):
        for k, v in obj.items():
            if isinstance(v, str) and v and any(p in k.lower() for p in _SENSITIVE_KEY_PATTERNS):
                found.add(v)
            else:
                _collect_sensitive(v, found)
    elif isinstance(obj, list):
        for item in obj:
            _collect_sensitive(item, found)


def _media_dirs(app: AppConfig) -> list[Path]:
    if app.plugin.media_dirs:
        return [Path(d) for d in app.plugin.media_dirs]
    return media.default_media_dirs()


async def main(data_path: str | None = None):
    data_dir = Path(data_path or u.get_data_path())

    l.info("Link preview starting…")

    config_path = config_io.find_config(data_dir)
    if config_path is None:
        l.warning(f"No config file found in: {data_dir} (tried config.json / .yaml / .toml), using defaults")
        raw: dict = {}
    else:
        l.info(f"Loading config from: {config_path}")
        with catch_and_log(f"loading {config_path}"):
            raw = config_io.load_config(config_path)

    sensitive: set[str] = set()
    _collect_sensitive(raw, sensitive)
    log.register_sensitive(frozenset(sensitive))
    l.info(f"Loaded {len(sensitive)} sensitive value(s) for log masking")

    registry.load_all()
    http = HttpClient()
    try:
        app = AppConfig.model_validate(raw)
        resolvers = registry.build_resolvers(raw, http, _media_dirs(app))
    except ValidationError as exc:
        l.critical(f"Config error:\n{exc}")
        await http.close()
        return

    if not resolvers:
        l.error("No resolvers enabled, nothing to do.")
        await http.close()
        return

    driver = NapCatDriver(app.napcat.instance_id, app.napcat)
    plugin = LinkAnalysisPlugin(resolvers, app.plugin)
    plugin.install(driver)

    task = asyncio.create_task(driver.start(), name=f"napcat/{driver.instance_id}")
    try:
        await task
    except asyncio.CancelledError:
        l.info("Link preview shutting down…")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    finally:
        await driver.unload()
        await http.close()
        await media.close()
        l.info("Link preview stopped.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(prog="linkpreview", description="Bilibili / Xiaohongshu / Douyin link previews for QQ")
    parser.add_argument("--data", help="Directory holding config.json|yaml|toml (default: $LINKPREVIEW_DATA_PATH or ./data)")
    parser.add_argument("--log-dir", help="Directory for debug log files (default: $LINKPREVIEW_LOG_DIR or ./logs)")
    args = parser.parse_args()

    log_path = log.setup_file_logging(args.log_dir)
    l.info(f"Writing debug log to {log_path}")
    try:
        asyncio.run(main(args.data))
    except KeyboardInterrupt:
        pass
    finally:
        log.close_file_logging()
