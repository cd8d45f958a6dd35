import secrets
import random


class TrueRNG:
    """
    A wrapper around Python's `secrets` module to provide cryptographically strong
    random numbers, suitable for casino game logic.

    Nothing here accepts a seed: hazard layouts must not be reproducible from
    anything a client can see.
    """

    def __init__(self):
        # SystemRandom draws from os.urandom(); seed() is a no-op on it
        self._system = random.SystemRandom()

    def sample_positions(self, population: int, k: int) -> list:
        """
        Pick `k` distinct positions from range(population), uniformly and
        without replacement.
        """
        if not 0 <= k <= population:
            raise ValueError("k must be between 0 and population")
        return sorted(self._system.sample(range(population), k))

    def token(self, nbytes: int = 16) -> str:
        """Returns an unguessable hex identifier."""
        return secrets.token_hex(nbytes)


rng = TrueRNG()
