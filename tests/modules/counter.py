"""A small well-behaved game: move around, press action to score."""

MOVES = {"up": (0, -1), "down": (0, 1), "left": (-1, 0), "right": (1, 0)}


class CounterGame:
    def __init__(self):
        self.x = 0
        self.y = 0
        self.score = 0
        self.ticks = 0
        self.running = False
        self.paused = False

    def init(self):
        self.x = 0
        self.y = 0
        self.score = 0
        self.ticks = 0
        self.paused = False
        request_frame(self.tick)

    def tick(self, now):
        if self.running and not self.paused:
            self.ticks += 1
        surface.clear("#101010")
        surface.fill_rect(self.x * 10, self.y * 10, 10, 10, "#00ff00")
        surface.text(4, 12, f"score {self.score}")
        request_frame(self.tick)

    def start(self):
        self.running = True

    def reset(self):
        self.x = 0
        self.y = 0
        self.score = 0
        self.paused = False

    def read_state(self):
        return {"score": self.score, "ended": self.score >= 10, "x": self.x, "y": self.y, "ticks": self.ticks}

    def dispatch_input(self, action):
        if not self.running:
            return False
        if action == "pause":
            self.paused = not self.paused
            return True
        if self.paused:
            return False
        if action in MOVES:
            dx, dy = MOVES[action]
            self.x += dx
            self.y += dy
            return True
        if action == "action":
            self.score += 1
            return True
        return False

    def read_meta(self):
        return {
            "name": "Counter",
            "description": "Press action to score a point. Ten points ends the game.",
            "controls": {"action": "score a point", "pause": "toggle pause", "up/down/left/right": "move"},
        }


host.game = CounterGame()
