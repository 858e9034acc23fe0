"""
Subdomain Allocator

Generates human-readable `adjective-noun` labels for tenant VMs
(e.g. `cozy-peanut`). Roughly 112 x 120 combinations.

Allocation only *checks* availability; it does not reserve. The caller
claims the name through the unique constraint on the tenant record and asks
again if the claim loses a race.
"""
import logging
import random
import re
import string
from typing import Callable, Optional

logger = logging.getLogger("vmorch.subdomain")

ADJECTIVES = (
    "agile", "azure", "bold", "brave", "bright", "calm", "clear", "clever",
    "cosmic", "cozy", "crisp", "daring", "deft", "eager", "epic", "fair",
    "fancy", "fast", "fierce", "fine", "fleet", "fluffy", "fresh", "gentle",
    "gleam", "gold", "grand", "great", "green", "happy", "hardy", "hasty",
    "humble", "icy", "jade", "jolly", "keen", "kind", "lemon", "light",
    "lime", "lively", "lucky", "magic", "merry", "mild", "mint", "misty",
    "neat", "nice", "noble", "novel", "olive", "orange", "pale", "peace",
    "pearl", "perky", "pine", "pink", "plum", "polar", "prime", "proud",
    "pure", "quick", "quiet", "rapid", "rare", "red", "rich", "rocky",
    "rosy", "royal", "ruby", "rusty", "sage", "sandy", "sharp", "shiny",
    "silent", "silver", "sleek", "slim", "smart", "smooth", "snowy", "soft",
    "solar", "solid", "spicy", "spring", "steel", "still", "stone", "stormy",
    "sunny", "super", "sweet", "swift", "teal", "tender", "tidy", "tiny",
    "vivid", "warm", "wavy", "wild", "wise", "witty", "young", "zesty",
)

NOUNS = (
    "acorn", "apple", "arrow", "badge", "beach", "bear", "bee", "bell",
    "berry", "bird", "bloom", "boat", "book", "brook", "bunny", "cake",
    "candle", "cave", "cedar", "cherry", "cliff", "cloud", "clover", "coral",
    "crane", "creek", "crown", "daisy", "dawn", "deer", "delta", "dew",
    "dove", "dream", "dune", "eagle", "elm", "ember", "falcon", "fawn",
    "fern", "finch", "flame", "flare", "flora", "forest", "fox", "frost",
    "gem", "glade", "grove", "harbor", "hawk", "heart", "heron", "hill",
    "honey", "island", "ivy", "jade", "jay", "jewel", "lake", "lark",
    "leaf", "lily", "lotus", "maple", "marsh", "meadow", "moon", "moss",
    "nest", "nova", "oak", "ocean", "olive", "otter", "owl", "palm",
    "panda", "peach", "peak", "peanut", "pearl", "pebble", "phoenix", "pine",
    "planet", "pond", "rain", "raven", "reef", "ridge", "river", "robin",
    "rose", "sage", "seed", "shore", "sky", "snow", "spark", "spring",
    "star", "stone", "storm", "stream", "sun", "swan", "thunder", "tiger",
    "trail", "tree", "tulip", "valley", "wave", "willow", "wind", "wolf",
)

SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 4

_SUBDOMAIN_RE = re.compile(r"^[a-z][a-z0-9-]{1,61}[a-z0-9]$")


def is_valid_subdomain_format(subdomain: str) -> bool:
    """Lowercase DNS label, 3-63 chars, starts with a letter, no `--`."""
    return bool(_SUBDOMAIN_RE.match(subdomain or "")) and "--" not in subdomain


def total_combinations() -> int:
    return len(ADJECTIVES) * len(NOUNS)


class SubdomainAllocator:
    """
    Picks a free subdomain.

    Args:
        is_available: availability check against the tenant store
        max_attempts: random draws before falling back to a suffixed name
        rng: random source (injectable for tests)
    """

    def __init__(
        self,
        is_available: Callable[[str], bool],
        max_attempts: int = 100,
        rng: Optional[random.Random] = None,
    ):
        self.is_available = is_available
        self.max_attempts = max(1, max_attempts)
        self.rng = rng or random.SystemRandom()

    def candidate(self) -> str:
        return f"{self.rng.choice(ADJECTIVES)}-{self.rng.choice(NOUNS)}"

    def suffix(self) -> str:
        return "".join(self.rng.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))

    def allocate(self) -> str:
        candidate = ""
        for _ in range(self.max_attempts):
            candidate = self.candidate()
            if self.is_available(candidate):
                return candidate

        # Accept a small residual collision risk rather than failing allocation
        subdomain = f"{candidate}-{self.suffix()}"
        logger.warning(
            "No free adjective-noun subdomain after %d attempts, using %s",
            self.max_attempts, subdomain,
        )
        return subdomain
