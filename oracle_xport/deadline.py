import time
import datetime


class Deadline:
    """
    A fixed point in time shared by every phase of one scrape.

    Measured on the monotonic clock; `wall` keeps the wall-clock instant for logs.
    """

    def __init__(self, seconds, clock=time.monotonic):
        self.budget = float(seconds)
        self._clock = clock
        self.started = clock()
        self.at = self.started + self.budget
        self.wall = datetime.datetime.now() + datetime.timedelta(seconds=self.budget)

    def remaining(self):
        return max(0.0, self.at - self._clock())

    def expired(self):
        return self._clock() >= self.at

    def elapsed(self):
        return self._clock() - self.started

    def __repr__(self):
        return f"Deadline(budget={self.budget}s, at={self.wall.isoformat(timespec='milliseconds')})"
