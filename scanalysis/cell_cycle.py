#!/usr/bin/env python3
"""
Cell-cycle scoring for single-cell RNA-seq analysis
Handles ortholog translation of the human marker lists and phase assignment
"""

import requests
import scanpy as sc
from scanalysis.params import CELL_CYCLE

# Tirosh et al. 2015 cell-cycle markers (human symbols)
S_GENES = [
    "MCM5", "PCNA", "TYMS", "FEN1", "MCM2", "MCM4", "RRM1", "UNG", "GINS2",
    "MCM6", "CDCA7", "DTL", "PRIM1", "UHRF1", "MLF1IP", "HELLS", "RFC2",
    "RPA2", "NASP", "RAD51AP1", "GMNN", "WDR76", "SLBP", "CCNE2", "UBR7",
    "POLD3", "MSH2", "ATAD2", "RAD51", "RRM2", "CDC45", "CDC6", "EXO1",
    "TIPIN", "DSCC1", "BLM", "CASP8AP2", "USP1", "CLSPN", "POLA1", "CHAF1B",
    "BRIP1", "E2F8",
]  # fmt: skip

G2M_GENES = [
    "HMGB2", "CDK1", "NUSAP1", "UBE2C", "BIRC5", "TPX2", "TOP2A", "NDC80",
    "CKS2", "NUF2", "CKS1B", "MKI67", "TMPO", "CENPF", "TACC3", "FAM64A",
    "SMC4", "CCNB2", "CKAP2L", "CKAP2", "AURKB", "BUB1", "KIF11", "ANP32E",
    "TUBB4B", "GTSE1", "KIF20B", "HJURP", "CDCA3", "HN1", "CDC20", "TTK",
    "CDC25C", "KIF2C", "RANGAP1", "NCAPD2", "DLGAP5", "CDCA2", "CDCA8",
    "ECT2", "KIF23", "HMMR", "AURKA", "PSRC1", "ANLN", "LBR", "CKAP5",
    "CENPE", "CTCF", "NEK2", "G2E3", "GAS2L3", "CBX5", "CENPA",
]  # fmt: skip


def convert_orthologs(
    genes,
    source=CELL_CYCLE["source_organism"],
    target=CELL_CYCLE["target_organism"],
    url=CELL_CYCLE["ortholog_url"],
    timeout=CELL_CYCLE["timeout"],
):
    """Translate gene symbols between organisms with the g:Orth service

    The request is made once, without retry or caching; HTTP and connection
    errors propagate to the caller.

    Args:
        genes: List of gene symbols in the source organism
        source: g:Profiler organism id of the input symbols
        target: g:Profiler organism id to translate to
        url: g:Orth endpoint
        timeout: Request timeout in seconds

    Returns:
        List of target symbols in input order; genes without ortholog are dropped
    """
    print(f"Translating {len(genes)} genes from {source} to {target}...")
    response = requests.post(
        url,
        json={"organism": source, "target": target, "query": list(genes)},
        timeout=timeout,
    )
    response.raise_for_status()
    results = response.json().get("result", [])

    # First ortholog per input gene
    orthologs = {}
    for hit in results:
        name = hit.get("name")
        if not name or name == "N/A":
            continue
        orthologs.setdefault(hit["incoming"], name)

    translated = []
    for gene in genes:
        name = orthologs.get(gene)
        if name is not None and name not in translated:
            translated.append(name)

    print(f"  {len(translated)} / {len(genes)} genes have an ortholog")
    return translated


def convert_human_to_mouse(genes, **kwargs):
    """Human to mouse symbol translation"""
    return convert_orthologs(genes, source="hsapiens", target="mmusculus", **kwargs)


def score_cell_cycle(
    adata, s_genes=S_GENES, g2m_genes=G2M_GENES, use_raw=None, random_state=0
):
    """Score S and G2M programs and assign a phase to every cell

    Each score is the mean expression of the marker set minus that of random
    control genes drawn from matching expression bins. Cells get the phase
    with the higher score, or G1 when both scores are negative.

    Args:
        adata: AnnData object with log-normalized expression (in .raw by default)
        s_genes: S-phase markers in the organism's symbols
        g2m_genes: G2M-phase markers in the organism's symbols
        use_raw: Score on adata.raw (default: when present)
        random_state: Seed for control gene sampling

    Adds columns:
        S_score, G2M_score, phase, cc_difference (S_score - G2M_score)
    """
    print("Scoring cell cycle...")
    if use_raw is None:
        use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names

    s_found = [g for g in s_genes if g in var_names]
    g2m_found = [g for g in g2m_genes if g in var_names]
    if not s_found or not g2m_found:
        raise ValueError(
            f"Cell-cycle markers missing from the data "
            f"(S: {len(s_found)}, G2M: {len(g2m_found)} found)"
        )
    print(f"  Using {len(s_found)} S and {len(g2m_found)} G2M markers")

    sc.tl.score_genes_cell_cycle(
        adata,
        s_genes=s_found,
        g2m_genes=g2m_found,
        use_raw=use_raw,
        random_state=random_state,
    )
    adata.obs["cc_difference"] = adata.obs["S_score"] - adata.obs["G2M_score"]

    print(adata.obs["phase"].value_counts().to_string())
    return adata
