import logging
from typing import Iterable, List, Optional, Tuple

from .config import MEMORY_SIZE_WORDS, WORD_SIZE_BITS

logger = logging.getLogger(__name__)

class Memory:
    """Simulates the machine's main memory. Code and data share the same word-addressed space."""

    def __init__(self, initial_data: Optional[List[Tuple[int, int]]] = None):
        """
        Initializes the memory.

        Args:
            initial_data: A list of (address, value) tuples to pre-populate memory.
                          Addresses are word addresses.
        """
        # Max value for a 16-bit word
        self._max_word_value = (1 << WORD_SIZE_BITS) - 1

        # Initialize memory with zeros
        self.data: List[int] = [0] * MEMORY_SIZE_WORDS

        if initial_data:
            for address, value in initial_data:
                self.write_word(address, value)

    def _validate_address(self, address: int) -> None:
        """Checks if the address is within the valid memory range."""
        if not (0 <= address < MEMORY_SIZE_WORDS):
            raise ValueError(
                f"Memory access error: Address {address} is out of bounds "
                f"(0-{MEMORY_SIZE_WORDS - 1})."
            )

    def _normalize_value(self, value: int) -> int:
        """Ensures the value fits within a 16-bit unsigned word (0-65535)."""
        return int(value) & self._max_word_value # Mask to 16 bits

    def read_word(self, address: int) -> int:
        """
        Reads a 16-bit word from the specified memory address.

        Raises:
            ValueError: If the address is out of bounds.
        """
        self._validate_address(address)
        return self.data[address]

    def write_word(self, address: int, value: int) -> None:
        """
        Writes a 16-bit word to the specified memory address.
        The value will be masked to fit within 16 bits (0-65535).

        Raises:
            ValueError: If the address is out of bounds.
        """
        self._validate_address(address)
        self.data[address] = self._normalize_value(value)

    def write_block(self, address: int, values: Iterable[int]) -> None:
        """
        Writes consecutive words starting at address. The whole block is checked
        against the memory bounds before anything is written.
        """
        words = [self._normalize_value(v) for v in values]
        if not words:
            return
        self._validate_address(address)
        self._validate_address(address + len(words) - 1)
        self.data[address:address + len(words)] = words
        logger.debug("Wrote %d words at %d", len(words), address)

    def __str__(self) -> str:
        non_zero_count = sum(1 for x in self.data if x != 0)
        return f"Memory({MEMORY_SIZE_WORDS} words, {non_zero_count} non-zero entries)"

    def dump(self, start_address: int = 0, num_words: int = 16) -> List[Tuple[int, int]]:
        """Returns a list of (address, value) tuples for a specified memory range."""
        self._validate_address(start_address)
        end_address = min(start_address + num_words, MEMORY_SIZE_WORDS)
        if start_address >= end_address:
            return []
        return [(addr, self.data[addr]) for addr in range(start_address, end_address)]

    def non_zero(self) -> List[Tuple[int, int]]:
        """Returns (address, value) for every word that is not zero."""
        return [(addr, value) for addr, value in enumerate(self.data) if value != 0]
