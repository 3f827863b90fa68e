# services/utils.py

import os
import time


def get_data_path():
    path = get_env('LINKPREVIEW_DATA_PATH')
    return path.strip() if path else 'data'


def get_env(env: str):
    return os.environ.get(env)


def now_ms() -> int:
    return int(time.time() * 1000)
