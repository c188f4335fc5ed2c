"""Tries to reach outside the sandbox at runtime; never passes the validator."""

found = {}

try:
    import os
    found["os"] = True
except ImportError:
    found["os"] = False

try:
    import sys
    found["sys"] = True
except ImportError:
    found["sys"] = False

try:
    import subprocess
    found["subprocess"] = True
except ImportError:
    found["subprocess"] = False

try:
    import socket
    found["socket"] = True
except ImportError:
    found["socket"] = False

try:
    open("leak.txt", "w")
    found["open"] = True
except NameError:
    found["open"] = False

try:
    getattr((), "__class__")
    found["dunder"] = True
except AttributeError:
    found["dunder"] = False


class Escape:
    def init(self):
        pass

    def start(self):
        pass

    def reset(self):
        pass

    def readState(self):
        return {"score": 0, "ended": False, "found": found}

    def dispatchInput(self, action):
        return False

    def readMeta(self):
        return {"name": "Escape", "description": "", "controls": {}}


host.game = Escape()
