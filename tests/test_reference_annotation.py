"""Tests for the reference-correlation annotator."""

import numpy as np
import pytest

from scanalysis import reference_annotation
from scanalysis.reference_annotation import (
    fetch_reference,
    default_marker_count,
    reference_markers,
    annotate_by_reference,
)


class TestMarkers:
    def test_default_count(self):
        assert default_marker_count(1) == 500
        assert default_marker_count(2) == 333
        assert default_marker_count(4) == 222

    def test_markers_separate_labels(self, reference_adata):
        genes = reference_markers(reference_adata, "label_main", n_genes=40)

        assert 0 < len(genes) <= 6 * 40
        assert {"Cd3e", "Cd19", "Lyz2"} <= set(genes)

    def test_restricted_labels(self, reference_adata):
        genes = reference_markers(
            reference_adata, "label_main", labels=["T cell", "B cell"], n_genes=3
        )
        assert len(genes) <= 2 * 3


class TestFetch:
    def test_local(self, tmp_path, reference_adata):
        path = tmp_path / "ref.h5ad"
        reference_adata.write(path)
        ref = fetch_reference(path, label_key="label_main")
        assert ref.n_obs == reference_adata.n_obs

    def test_missing_label(self, tmp_path, reference_adata):
        path = tmp_path / "ref.h5ad"
        reference_adata.write(path)
        with pytest.raises(KeyError):
            fetch_reference(path, label_key="label_fine")

    def test_download(self, monkeypatch, tmp_path, reference_adata):
        path = tmp_path / "ref.h5ad"
        reference_adata.write(path)

        class FakeResponse:
            content = path.read_bytes()

            def raise_for_status(self):
                pass

        monkeypatch.setattr(
            reference_annotation.requests, "get", lambda url, timeout: FakeResponse()
        )
        ref = fetch_reference("https://example.org/ref.h5ad", label_key="label_main")
        assert ref.n_obs == reference_adata.n_obs


class TestAnnotate:
    def test_cluster_labels(self, processed_adata, reference_adata):
        result = annotate_by_reference(processed_adata, reference_adata, groupby="clusters")
        obs = processed_adata.obs

        assert obs["singler"].notna().all()
        assert set(obs["singler"]) <= set(reference_adata.obs["label_main"])
        assert set(result["group"]) == set(obs["clusters"].astype(str))
        assert "singler_delta" in obs
        assert {"score_T cell", "score_B cell", "score_Monocyte"} <= set(result.columns)

        agreement = (obs["singler"].astype(str) == obs["true_type"].astype(str)).mean()
        assert agreement > 0.9

    def test_without_fine_tuning(self, processed_adata, reference_adata):
        result = annotate_by_reference(
            processed_adata, reference_adata, groupby="clusters", fine_tune=False
        )
        scores = result[[c for c in result.columns if c.startswith("score_")]]
        best = scores.idxmax(axis=1).str.replace("score_", "", regex=False)
        assert list(best) == list(result["label"])
        assert (result["delta"] >= 0).all()

    def test_per_cell(self, processed_adata, reference_adata):
        annotate_by_reference(
            processed_adata, reference_adata, groupby=None, key_added="singler_cell"
        )
        obs = processed_adata.obs
        assert obs["singler_cell"].notna().all()
        assert len(obs["singler_cell"]) == processed_adata.n_obs

    def test_no_shared_genes(self, processed_adata, reference_adata):
        ref = reference_adata.copy()
        ref.var_names = [f"other{i}" for i in range(ref.n_vars)]
        with pytest.raises(ValueError):
            annotate_by_reference(processed_adata, ref, groupby="clusters")

    def test_missing_groupby(self, processed_adata, reference_adata):
        with pytest.raises(KeyError):
            annotate_by_reference(processed_adata, reference_adata, groupby="nope")

    def test_annotators_coexist(self, processed_adata, reference_adata, gene_sets):
        from scanalysis.annotation import annotate_clusters_by_markers

        annotate_clusters_by_markers(processed_adata, gene_sets)
        annotate_by_reference(processed_adata, reference_adata)
        obs = processed_adata.obs
        assert obs["sctype"].notna().all()
        assert obs["singler"].notna().all()
