"""
Probe Annotation Module
=======================

This module resolves platform probes to gene symbols:
- Accession extraction from the comma-separated GB_LIST field
- Static identifier -> symbol tables (REFSEQ, ENTREZID, SYMBOL, ...)
- Building the static table once from mygene.info
- Attaching resolved accessions and symbols to adata.var

Only tokens containing the accession pattern ("NM" by default) resolve,
so non-coding (NR_) and predicted (XM_) RefSeq records are left
unannotated unless another pattern is configured.

Author: Alfred3005
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd

from .utils import setup_logging, ensure_dir


def extract_accession(value, pattern: str = "NM") -> Optional[str]:
    """
    Return the first comma-separated token containing ``pattern``.

    Matching is a case-sensitive substring test on the raw tokens.

    Parameters
    ----------
    value : str or None
        Raw accession list, e.g. "NM_008866,BC013536,ENSMUST00000027036"
    pattern : str, default "NM"
        Substring a token must contain

    Returns
    -------
    str or None
        The matching token, or None if no token matches

    Examples
    --------
    >>> extract_accession("BC013536,NM_008866,NM_001")
    'NM_008866'
    >>> extract_accession("BC013536") is None
    True
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None

    for token in str(value).split(','):
        if pattern in token:
            return token

    return None


def resolve_accessions(values: Iterable, pattern: str = "NM") -> pd.Series:
    """
    Resolve an accession per row, keeping the input order and index.

    Parameters
    ----------
    values : pd.Series or iterable
        Raw accession-list strings
    pattern : str, default "NM"
        Substring a token must contain

    Returns
    -------
    pd.Series
        Resolved accessions (None where nothing matched)
    """
    if not isinstance(values, pd.Series):
        values = pd.Series(list(values))

    return values.map(lambda v: extract_accession(v, pattern)).astype(object)


class SymbolTable:
    """
    Static gene identifier table, one column per key type.

    Lookups follow the annotation-package convention: the caller names
    the key type of the query identifiers and the column to return.

    Parameters
    ----------
    table : pd.DataFrame
        Identifier table, e.g. columns REFSEQ, ENTREZID, SYMBOL

    Examples
    --------
    >>> table = SymbolTable.from_file("data/annotation/refseq_symbol_mouse.tsv")
    >>> table.map_ids(["NM_008866"], keytype="REFSEQ", column="SYMBOL")
    {'NM_008866': 'Lypla1'}
    """

    def __init__(self, table: pd.DataFrame):
        self.table = table.copy()
        self.table.columns = [str(c).upper() for c in self.table.columns]

    @classmethod
    def from_file(cls, path: Union[str, Path], sep: Optional[str] = None) -> "SymbolTable":
        """Load a table from TSV/CSV (separator guessed from the suffix)."""
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Identifier table not found: {path}")

        if sep is None:
            sep = ',' if path.suffix == '.csv' else '\t'

        return cls(pd.read_csv(path, sep=sep, dtype=str))

    @property
    def keytypes(self) -> List[str]:
        return list(self.table.columns)

    def map_ids(
        self,
        keys: Iterable[str],
        keytype: str = "REFSEQ",
        column: str = "SYMBOL"
    ) -> Dict[str, str]:
        """
        Map a batch of identifiers to another column.

        Keys mapping to several rows take the first one; unknown keys are
        absent from the result.

        Parameters
        ----------
        keys : iterable of str
            Query identifiers
        keytype : str, default "REFSEQ"
            Column holding the query identifiers
        column : str, default "SYMBOL"
            Column to return

        Returns
        -------
        dict
            key -> value for every key found
        """
        keytype = keytype.upper()
        column = column.upper()

        for name in (keytype, column):
            if name not in self.table.columns:
                raise KeyError(
                    f"Unknown key type '{name}'. Available: {self.keytypes}"
                )

        wanted = set(k for k in keys if k is not None)

        subset = self.table.loc[
            self.table[keytype].isin(wanted), [keytype, column]
        ].dropna()
        subset = subset.drop_duplicates(keytype, keep='first')

        return dict(zip(subset[keytype], subset[column]))


def build_symbol_table(
    accessions: Iterable[str],
    output_path: Union[str, Path],
    species: str = "mouse",
    logger: Optional[logging.Logger] = None
) -> SymbolTable:
    """
    Build a static REFSEQ -> SYMBOL table from mygene.info and save it.

    Run once; later analyses load the written file offline with
    SymbolTable.from_file.

    Parameters
    ----------
    accessions : iterable of str
        RefSeq accessions to map
    output_path : str or Path
        Destination TSV file
    species : str, default "mouse"
        mygene.info species
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    SymbolTable
        The table that was written
    """
    import mygene

    if logger is None:
        logger = setup_logging()

    query = sorted(set(a for a in accessions if a))
    logger.info(f"Querying mygene.info for {len(query):,} RefSeq accessions ({species})")

    mg = mygene.MyGeneInfo()
    results = mg.querymany(
        query,
        scopes='refseq',
        fields='symbol,entrezgene',
        species=species,
        returnall=True,
        verbose=False
    )

    rows = []
    for item in results['out']:
        if item.get('notfound') or 'symbol' not in item:
            continue
        rows.append({
            'REFSEQ': item['query'],
            'ENTREZID': str(item.get('entrezgene', '')) or None,
            'SYMBOL': item['symbol']
        })

    table = pd.DataFrame(rows, columns=['REFSEQ', 'ENTREZID', 'SYMBOL'])
    table = table.drop_duplicates('REFSEQ', keep='first')

    output_path = Path(output_path)
    ensure_dir(output_path.parent)
    table.to_csv(output_path, sep='\t', index=False)

    logger.info(
        f"Mapped {len(table):,} / {len(query):,} accessions; table saved to: {output_path}"
    )

    return SymbolTable(table)


def annotate_probes(
    adata: ad.AnnData,
    table: SymbolTable,
    source_key: str = "GB_LIST",
    pattern: str = "NM",
    keytype: str = "REFSEQ",
    column: str = "SYMBOL",
    accession_key: str = "accession",
    symbol_key: str = "symbol",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Resolve probe accessions and gene symbols into adata.var.

    Adds two columns aligned to the probe order: the resolved accession
    and its symbol. Probes without a matching accession or without a
    table entry get NaN. Several probes may share one symbol.

    Parameters
    ----------
    adata : AnnData
        Expression bundle with platform annotation in .var
    table : SymbolTable
        Static identifier table
    source_key : str, default "GB_LIST"
        .var column with the comma-separated accession list
    pattern : str, default "NM"
        Substring an accession token must contain
    keytype : str, default "REFSEQ"
        Key type of the resolved accessions
    column : str, default "SYMBOL"
        Table column to attach
    accession_key : str, default "accession"
        Name of the new accession column
    symbol_key : str, default "symbol"
        Name of the new symbol column
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        The same AnnData with two new .var columns

    Examples
    --------
    >>> table = SymbolTable.from_file("data/annotation/refseq_symbol_mouse.tsv")
    >>> adata = annotate_probes(adata, table, logger=logger)
    >>> adata.var[['accession', 'symbol']].head()
    """
    if logger is None:
        logger = setup_logging()

    if source_key not in adata.var.columns:
        raise KeyError(
            f"Accession column '{source_key}' not found in adata.var. "
            f"Available columns: {list(adata.var.columns)}"
        )

    logger.info(
        f"Resolving accessions from '{source_key}' (pattern '{pattern}') "
        f"for {adata.n_vars:,} probes"
    )

    accessions = resolve_accessions(adata.var[source_key], pattern)
    accessions.index = adata.var_names

    # One batch query for every distinct accession
    mapping = table.map_ids(accessions.dropna().unique(), keytype=keytype, column=column)

    adata.var[accession_key] = accessions
    adata.var[symbol_key] = accessions.map(mapping)

    n_accession = accessions.notna().sum()
    n_symbol = adata.var[symbol_key].notna().sum()
    logger.info(f"  Probes with a resolved accession: {n_accession:,}")
    logger.info(f"  Probes with a gene symbol: {n_symbol:,}")

    n_unresolved = adata.n_vars - n_symbol
    if n_unresolved > 0:
        logger.info(
            f"  Probes left without symbol: {n_unresolved:,} "
            f"({n_unresolved/adata.n_vars*100:.1f}%)"
        )

    return adata
