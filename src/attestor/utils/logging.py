import logging
import sys

def get_logger(name: str = "attestor"):
    logger = logging.getLogger(name)
    root = logging.getLogger("attestor")
    if not root.handlers:
        h = logging.StreamHandler(sys.stdout)
        fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s %(message)s")
        h.setFormatter(fmt)
        root.addHandler(h)
        root.setLevel(logging.INFO)
    return logger
