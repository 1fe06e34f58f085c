"""
FASTA genome provider for HiCNB.
Serves chromosome sequences by (chromosome, start, end) to the covariate table builder.
"""

import logging
from typing import Dict, Iterable, List, Optional

from Bio import SeqIO

from hicnb.core.exceptions import DataError

logger = logging.getLogger(__name__)


class FastaGenome:
    """
    In-memory genome sequence provider.
    Coordinates are 0-based, half-open.
    """

    def __init__(self, sequences: Dict[str, str]):
        self._sequences = {str(k): str(v).upper() for k, v in sequences.items()}

    @classmethod
    def from_fasta(cls, fasta_path: str, chromosomes: Optional[Iterable[str]] = None) -> "FastaGenome":
        """
        Load the sequences of a FASTA file, optionally restricted to some chromosomes.

        :param fasta_path: Path to the (uncompressed) FASTA file.
        :param chromosomes: Chromosome names to keep; all when None.
        :return: FastaGenome.
        """
        wanted = set(chromosomes) if chromosomes is not None else None
        sequences = {}
        for record in SeqIO.parse(fasta_path, "fasta"):
            if wanted is None or record.id in wanted:
                sequences[record.id] = str(record.seq)
        logger.info(f"Loaded {len(sequences)} sequences from {fasta_path}")
        return cls(sequences)

    def chromosomes(self) -> List[str]:
        return list(self._sequences.keys())

    def chromosome_length(self, chrom: str) -> int:
        if chrom not in self._sequences:
            raise DataError("sequence not available", chrom)
        return len(self._sequences[chrom])

    def fetch(self, chrom: str, start: int, end: int) -> str:
        """
        Return the sequence of chrom[start:end].

        :raises DataError: if the chromosome is unknown.
        """
        if chrom not in self._sequences:
            raise DataError("sequence not available", chrom)
        return self._sequences[chrom][start:end]
