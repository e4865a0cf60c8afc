"""Shared fixtures: synthetic two-group expression bundles."""

import logging

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from immgen_de.utils import setup_logging


def make_series(n_probes=200, n_per_group=3, n_de=10, fold=8.0, seed=0):
    """Raw (non-logged) two-group series shaped like a parsed GEO bundle.

    The first ``n_de`` probes are ``fold`` times higher in GroupB. Every
    10th probe only carries an XM_ accession; probes 1 and 2 share one
    NM_ accession.
    """
    rng = np.random.default_rng(seed)

    groups = ["GroupA"] * n_per_group + ["GroupB"] * n_per_group
    replicate = list(range(1, n_per_group + 1)) * 2
    gsm = [f"GSM{100 + i}" for i in range(len(groups))]

    base = rng.uniform(50, 5000, size=n_probes)
    X = base[None, :] * np.exp(rng.normal(0, 0.1, size=(len(groups), n_probes)))
    X[n_per_group:, :n_de] *= fold

    gb_list = []
    for i in range(n_probes):
        if i % 10 == 9:
            gb_list.append(f"BC{i:06d},XM_{i:06d}")
        elif i == 2:
            gb_list.append(f"BC{i:06d},NM_{1:06d}")
        else:
            gb_list.append(f"BC{i:06d},NM_{i:06d},NM_9{i:05d}")

    obs = pd.DataFrame(
        {
            "title": [f"{g}#{r}" for g, r in zip(groups, replicate)],
            "geo_accession": gsm,
        },
        index=gsm,
    )
    var = pd.DataFrame(
        {"GB_LIST": gb_list},
        index=[str(10344600 + i) for i in range(n_probes)],
    )

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.uns["series"] = {"platform_id": "GPL6246", "source_file": "synthetic"}
    return adata


def make_symbol_frame(n_probes=200, missing=(5,)):
    """REFSEQ -> SYMBOL table for make_series accessions."""
    rows = [
        {"REFSEQ": f"NM_{i:06d}", "ENTREZID": str(1000 + i), "SYMBOL": f"Gene{i}"}
        for i in range(n_probes)
        if i not in missing
    ]
    return pd.DataFrame(rows)


@pytest.fixture
def logger():
    log = setup_logging(console_output=False, log_level="DEBUG")
    yield log
    log.handlers = []


@pytest.fixture
def raw_adata():
    return make_series()


@pytest.fixture
def symbol_frame():
    return make_symbol_frame()


@pytest.fixture
def symbol_table_path(tmp_path, symbol_frame):
    path = tmp_path / "refseq_symbol.tsv"
    symbol_frame.to_csv(path, sep="\t", index=False)
    return path
