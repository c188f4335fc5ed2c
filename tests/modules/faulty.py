"""Raises on jump; answers 'action' with a string instead of a bool."""

state = {"score": 0, "ended": False}


def init():
    state["score"] = 0


def start():
    pass


def reset():
    state["score"] = 0


def read_state():
    return dict(state)


def dispatch_input(action):
    if action == "jump":
        raise RuntimeError("jump is broken")
    if action == "action":
        return "yes"
    if action == "up":
        state["score"] += 2
        return True
    return False


def read_meta():
    return {"name": "Faulty", "description": "Breaks on purpose.", "controls": ["up", "jump"]}


host["game"] = {
    "init": init,
    "start": start,
    "reset": reset,
    "readState": read_state,
    "dispatchInput": dispatch_input,
    "readMeta": read_meta,
}
