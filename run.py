#!/usr/bin/env python3
"""Watch-mode runner"""
import asyncio
import json
import os

from restorekit import configure_logging, create_context
from restorekit.config import Settings, config
from restorekit.utils.passwords import EnvironmentPasswordProvider
from restorekit.watcher import run_until_stopped

if __name__ == '__main__':
    config_obj = config[os.environ.get('RESTOREKIT_ENV', 'development')]
    configure_logging(config_obj.LOG_DIR, debug=config_obj.DEBUG)

    settings_path = os.environ.get('RESTOREKIT_SETTINGS', 'settings.json')
    with open(settings_path, 'r', encoding='utf-8') as f:
        settings = Settings.from_mapping(json.load(f))

    context = create_context(settings, config_obj, password_provider=EnvironmentPasswordProvider())

    asyncio.run(run_until_stopped(
        context.orchestrator,
        maintenance=context.maintenance,
        state=context.state
    ))
