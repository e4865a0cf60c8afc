#!/usr/bin/env python
"""
Smoke test for the GEO retrieval and annotation steps
Downloads GSE15907 from NCBI GEO (network required) and checks the bundle
"""

import sys
import os

# Add project to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

print("="*60)
print("Smoke Test: GEO Retrieval")
print("ImmGen series matrix + platform annotation")
print("="*60)
print()

# Step 1: Import modules
print("[Step 1] Importing modules...")
try:
    from immgen_de import utils, download, annotation, preprocessing
    print("✓ Imports successful")
except Exception as e:
    print(f"✗ Import failed: {e}")
    sys.exit(1)

# Step 2: Load configuration
print("\n[Step 2] Loading configuration...")
try:
    config = utils.load_config("config/analysis_params.yaml")
    geo_params = config['geo']
    print(f"✓ Configuration loaded")
    print(f"  Accession: {geo_params['accession']}")
    print(f"  Groups: {config['differential_expression']['groups']}")
except Exception as e:
    print(f"✗ Config loading failed: {e}")
    sys.exit(1)

# Step 3: Setup logging
print("\n[Step 3] Setting up logging...")
try:
    logger = utils.setup_logging(
        log_file="results/reports/smoke_test_retrieval.log",
        log_level="INFO"
    )
    print("✓ Logging configured")
except Exception as e:
    print(f"✗ Logging setup failed: {e}")
    sys.exit(1)

# Step 4: List matrix files
print("\n[Step 4] Listing series matrix files on GEO...")
try:
    names = download.list_series_matrix_files(
        geo_params['accession'],
        timeout=geo_params.get('timeout'),
        logger=logger
    )
    print(f"✓ Found {len(names)} file(s)")
    for name in names:
        print(f"  {name}")
except download.GEOFetchError as e:
    print(f"✗ Listing failed: {e}")
    print("\nPossible issues:")
    print("  - Network connectivity issues")
    print("  - NCBI GEO temporarily unavailable")
    sys.exit(1)

# Step 5: Download and parse
print("\n[Step 5] Downloading series (first run may take several minutes)...")
try:
    adata = download.fetch_series(
        geo_params['accession'],
        destdir=geo_params.get('destdir', 'data/raw'),
        platform=geo_params.get('platform'),
        timeout=geo_params.get('timeout'),
        logger=logger
    )
    print(f"✓ Retrieval complete")
    print(f"  Samples: {adata.n_obs:,}")
    print(f"  Probes: {adata.n_vars:,}")
    print(f"  Platform: {adata.uns['series'].get('platform_id')}")
    print(f"  Probe annotation columns: {len(adata.var.columns)}")
except download.GEOFetchError as e:
    print(f"✗ Retrieval failed: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)

# Step 6: Population labels
print("\n[Step 6] Deriving population labels...")
adata = preprocessing.add_population(adata, logger=logger)
counts = adata.obs['population'].value_counts()
print(f"✓ {len(counts)} populations")
for group in config['differential_expression']['groups']:
    print(f"  {group}: {counts.get(group, 0)} samples")

# Step 7: Accession resolution (no symbol table needed)
print("\n[Step 7] Resolving RefSeq accessions...")
try:
    accessions = annotation.resolve_accessions(
        adata.var[config['annotation'].get('source_key', 'GB_LIST')],
        config['annotation'].get('pattern', 'NM')
    )
    print(f"✓ {accessions.notna().sum():,} / {len(accessions):,} probes resolved")
except KeyError as e:
    print(f"✗ Accession column missing: {e}")
    print("  Note: requires annotate_platform: true")

# Summary
print("\n" + "="*60)
print("TEST SUMMARY")
print("="*60)
print("✓ Retrieval working correctly!")
print()
print("Next steps:")
print("  1. Check logs: results/reports/smoke_test_retrieval.log")
print("  2. Run full analysis: python -m immgen_de.pipeline config/analysis_params.yaml")
print("  3. Figures are written to: results/figures/")
print("="*60)
