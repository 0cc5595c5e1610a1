"""Tests for the marker-scoring annotator."""

import io

import numpy as np
import pandas as pd
import pytest

from scanalysis import annotation
from scanalysis.annotation import (
    fetch_marker_db,
    prepare_gene_sets,
    marker_sensitivity,
    score_marker_sets,
    annotate_clusters_by_markers,
    compare_annotations,
    UNKNOWN_LABEL,
)


class TestMarkerDB:
    def test_prepare_gene_sets(self, marker_db):
        sets = prepare_gene_sets(marker_db, tissue="Immune system")

        assert list(sets) == ["T cell", "B cell", "Monocyte"]
        assert sets["T cell"]["positive"] == ["CD3E", "CD3D", "CD2"]
        assert sets["Monocyte"]["positive"] == ["LYZ2", "CD14", "FCGR3"]
        assert sets["Monocyte"]["negative"] == []
        assert sets["B cell"]["negative"] == ["CD3E"]

    def test_unknown_tissue(self, marker_db):
        with pytest.raises(ValueError):
            prepare_gene_sets(marker_db, tissue="Kidney")

    def test_fetch_from_url(self, monkeypatch, marker_db):
        buffer = io.BytesIO()
        marker_db.to_excel(buffer, index=False)

        class FakeResponse:
            content = buffer.getvalue()

            def raise_for_status(self):
                pass

        monkeypatch.setattr(annotation.requests, "get", lambda url, timeout: FakeResponse())
        db = fetch_marker_db("https://example.org/markers.xlsx")

        assert list(db["cellName"]) == list(marker_db["cellName"])

    def test_fetch_local_file(self, tmp_path, marker_db):
        path = tmp_path / "markers.xlsx"
        marker_db.to_excel(path, index=False)
        db = fetch_marker_db(path)
        assert len(db) == len(marker_db)


class TestSensitivity:
    def test_weights(self):
        sets = {
            "a": {"positive": ["X", "Y"], "negative": []},
            "b": {"positive": ["X", "Z"], "negative": []},
            "c": {"positive": ["X"], "negative": []},
        }
        weights = marker_sensitivity(sets)
        assert weights["X"] == pytest.approx(0.0)
        assert weights["Y"] == pytest.approx(1.0)
        assert weights["Z"] == pytest.approx(1.0)

    def test_single_type(self):
        weights = marker_sensitivity({"a": {"positive": ["X"], "negative": []}})
        assert weights == {"X": 1.0}


class TestScoring:
    def test_case_insensitive_scores(self, processed_adata, gene_sets):
        scores = score_marker_sets(processed_adata, gene_sets)

        # no Neuron markers in the data
        assert list(scores.columns) == ["T cell", "B cell", "Monocyte"]
        assert list(scores.index) == list(processed_adata.obs_names)

        best = scores.idxmax(axis=1)
        agreement = (best == processed_adata.obs["true_type"].astype(str)).mean()
        assert agreement > 0.9

    def test_no_markers_present(self, processed_adata):
        with pytest.raises(ValueError):
            score_marker_sets(processed_adata, {"x": {"positive": ["NOPE"], "negative": []}})


class TestClusterLabels:
    def test_label_coverage(self, processed_adata, gene_sets):
        result = annotate_clusters_by_markers(processed_adata, gene_sets)
        obs = processed_adata.obs

        assert obs["sctype"].notna().all()
        assert set(obs["sctype"]) <= set(gene_sets) | {UNKNOWN_LABEL}
        assert set(result["cluster"]) == set(obs["clusters"].astype(str))
        assert processed_adata.obsm["sctype_scores"].shape[0] == processed_adata.n_obs
        # one label per cluster
        per_cluster = obs.groupby("clusters", observed=True)["sctype"].nunique()
        assert (per_cluster == 1).all()

    def test_labels_match_types(self, processed_adata, gene_sets):
        annotate_clusters_by_markers(processed_adata, gene_sets)
        obs = processed_adata.obs
        agreement = (obs["sctype"].astype(str) == obs["true_type"].astype(str)).mean()
        assert agreement > 0.9

    def test_unknown_rule(self, processed_adata, gene_sets):
        result = annotate_clusters_by_markers(processed_adata, gene_sets, unknown_fraction=1e6)
        assert (result["cell_type"] == UNKNOWN_LABEL).all()
        assert (processed_adata.obs["sctype"] == UNKNOWN_LABEL).all()

    def test_unknown_threshold_uses_cluster_size(self, processed_adata, gene_sets):
        result = annotate_clusters_by_markers(processed_adata, gene_sets)
        for _, row in result.iterrows():
            if row["cell_type"] == UNKNOWN_LABEL:
                assert row["score"] < 0.25 * row["n_cells"]
            else:
                assert row["score"] >= 0.25 * row["n_cells"]

    def test_missing_groupby(self, processed_adata, gene_sets):
        with pytest.raises(KeyError):
            annotate_clusters_by_markers(processed_adata, gene_sets, groupby="nope")

    def test_compare(self, processed_adata, gene_sets):
        annotate_clusters_by_markers(processed_adata, gene_sets)
        table = compare_annotations(processed_adata, "sctype", "true_type")
        assert table.values.sum() == processed_adata.n_obs
