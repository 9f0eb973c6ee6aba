import threading

# ---------- small thread-safe logger ----------
_print_lock = threading.Lock()
def log(msg: str) -> None:
    with _print_lock:
        print(msg, flush=True)
