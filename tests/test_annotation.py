"""Tests for accession resolution and gene symbol annotation."""

from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from immgen_de.annotation import (
    SymbolTable,
    annotate_probes,
    build_symbol_table,
    extract_accession,
    resolve_accessions,
)


class TestExtractAccession:
    def test_first_matching_token(self):
        assert extract_accession("BC013536,NM_008866,NM_001") == "NM_008866"

    def test_no_match_is_none(self):
        assert extract_accession("BC013536,XM_001,NR_002") is None

    def test_missing_value_is_none(self):
        assert extract_accession(None) is None
        assert extract_accession(np.nan) is None

    def test_match_is_case_sensitive(self):
        assert extract_accession("nm_008866") is None

    def test_substring_match_anywhere_in_token(self):
        assert extract_accession("ENSMUST1,XNM_5") == "XNM_5"

    def test_tokens_are_not_stripped(self):
        assert extract_accession("BC1, NM_008866") == " NM_008866"

    def test_custom_pattern(self):
        assert extract_accession("NM_1,NR_2", pattern="NR") == "NR_2"


def test_resolved_accession_is_a_token_of_its_row(raw_adata):
    raw = raw_adata.var["GB_LIST"]
    resolved = resolve_accessions(raw)

    assert len(resolved) == len(raw)
    for value, accession in zip(raw, resolved):
        if pd.isna(accession):
            assert not any("NM" in t for t in value.split(","))
        else:
            assert accession in value.split(",")
            assert "NM" in accession


def test_resolve_accessions_keeps_index():
    values = pd.Series(["NM_1", "BC2"], index=["p1", "p2"])
    resolved = resolve_accessions(values)

    assert list(resolved.index) == ["p1", "p2"]
    assert resolved["p1"] == "NM_1"
    assert pd.isna(resolved["p2"])


class TestSymbolTable:
    def test_map_ids_batch(self, symbol_frame):
        table = SymbolTable(symbol_frame)
        mapping = table.map_ids(["NM_000001", "NM_000003", "NM_999999"])

        assert mapping == {"NM_000001": "Gene1", "NM_000003": "Gene3"}

    def test_duplicate_keys_take_first(self):
        table = SymbolTable(pd.DataFrame({
            "REFSEQ": ["NM_1", "NM_1"],
            "SYMBOL": ["First", "Second"],
        }))
        assert table.map_ids(["NM_1"]) == {"NM_1": "First"}

    def test_other_key_types(self, symbol_frame):
        table = SymbolTable(symbol_frame)
        assert table.map_ids(["1001"], keytype="ENTREZID") == {"1001": "Gene1"}
        assert table.map_ids(["Gene1"], keytype="symbol", column="refseq") == {
            "Gene1": "NM_000001"
        }

    def test_unknown_keytype(self, symbol_frame):
        with pytest.raises(KeyError):
            SymbolTable(symbol_frame).map_ids(["NM_1"], keytype="UNIPROT")

    def test_from_file(self, symbol_table_path):
        table = SymbolTable.from_file(symbol_table_path)
        assert table.keytypes == ["REFSEQ", "ENTREZID", "SYMBOL"]
        assert table.map_ids(["NM_000002"]) == {"NM_000002": "Gene2"}

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SymbolTable.from_file(tmp_path / "missing.tsv")


class TestAnnotateProbes:
    def test_appends_aligned_columns(self, raw_adata, symbol_frame, logger):
        probes = list(raw_adata.var_names)
        adata = annotate_probes(raw_adata, SymbolTable(symbol_frame), logger=logger)

        assert list(adata.var_names) == probes
        assert {"accession", "symbol"} <= set(adata.var.columns)
        assert adata.var.loc[probes[3], "accession"] == "NM_000003"
        assert adata.var.loc[probes[3], "symbol"] == "Gene3"

    def test_unresolved_rows_are_absent(self, raw_adata, symbol_frame, logger):
        adata = annotate_probes(raw_adata, SymbolTable(symbol_frame), logger=logger)
        var = adata.var

        # XM_ only
        assert pd.isna(var["accession"].iloc[9])
        assert pd.isna(var["symbol"].iloc[9])
        # accession resolved, not in the table
        assert var["accession"].iloc[5] == "NM_000005"
        assert pd.isna(var["symbol"].iloc[5])

    def test_shared_accession_gives_shared_symbol(self, raw_adata, symbol_frame, logger):
        adata = annotate_probes(raw_adata, SymbolTable(symbol_frame), logger=logger)

        assert adata.var["symbol"].iloc[1] == "Gene1"
        assert adata.var["symbol"].iloc[2] == "Gene1"

    def test_deterministic(self, raw_adata, symbol_frame, logger):
        table = SymbolTable(symbol_frame)
        first = annotate_probes(raw_adata.copy(), table, logger=logger).var
        second = annotate_probes(raw_adata.copy(), table, logger=logger).var

        pd.testing.assert_frame_equal(first, second)

    def test_queries_table_once(self, raw_adata, logger):
        table = MagicMock(spec=SymbolTable)
        table.map_ids.return_value = {}

        annotate_probes(raw_adata, table, logger=logger)

        assert table.map_ids.call_count == 1
        keys = list(table.map_ids.call_args[0][0])
        assert len(keys) == len(set(keys))

    def test_missing_source_column(self, raw_adata, symbol_frame, logger):
        with pytest.raises(KeyError):
            annotate_probes(
                raw_adata, SymbolTable(symbol_frame), source_key="nope", logger=logger
            )


def test_build_symbol_table_from_mygene(tmp_path, logger):
    client = MagicMock()
    client.querymany.return_value = {
        "out": [
            {"query": "NM_008866", "symbol": "Lypla1", "entrezgene": 18777},
            {"query": "NM_000000", "notfound": True},
        ]
    }
    output = tmp_path / "annotation" / "table.tsv"

    with patch("mygene.MyGeneInfo", return_value=client):
        table = build_symbol_table(
            ["NM_008866", "NM_000000", None], output, logger=logger
        )

    assert output.exists()
    assert table.map_ids(["NM_008866", "NM_000000"]) == {"NM_008866": "Lypla1"}
    assert SymbolTable.from_file(output).map_ids(["NM_008866"], column="ENTREZID") == {
        "NM_008866": "18777"
    }

    query = client.querymany.call_args[0][0]
    assert query == ["NM_000000", "NM_008866"]
    assert client.querymany.call_args[1]["scopes"] == "refseq"
