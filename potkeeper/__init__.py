"""PotKeeper - оркестратор раундов лотереи с сидом из будущего блока маяка."""

__version__ = "1.0.0"
