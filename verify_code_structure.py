#!/usr/bin/env python3
"""
Code structure verification script
Verifies that the package is syntactically correct without requiring dependencies
"""

import sys
import os
import ast

print("="*60)
print("Code Structure Verification")
print("ImmGen Differential Expression Package")
print("="*60)
print()

def verify_python_file(filepath, description):
    """Verify a Python file is syntactically correct"""
    print(f"Checking {description}...")
    try:
        with open(filepath, 'r') as f:
            code = f.read()

        tree = ast.parse(code)
        functions = [node.name for node in ast.walk(tree) if isinstance(node, ast.FunctionDef)]

        print(f"  ✓ {filepath}")
        print(f"    - Syntax: Valid")
        print(f"    - Functions: {len(functions)}")
        if functions:
            print(f"    - Top functions: {', '.join(functions[:3])}")

        return True

    except SyntaxError as e:
        print(f"  ✗ Syntax Error in {filepath}")
        print(f"    Line {e.lineno}: {e.msg}")
        return False
    except OSError as e:
        print(f"  ✗ Error: {e}")
        return False

# Verify all source modules
print("[1] Verifying Source Modules")
print("-" * 60)

modules_to_check = [
    ("immgen_de/__init__.py", "Module initialization"),
    ("immgen_de/utils.py", "Utilities module"),
    ("immgen_de/download.py", "GEO retrieval module"),
    ("immgen_de/annotation.py", "Probe annotation module"),
    ("immgen_de/preprocessing.py", "Preprocessing module"),
    ("immgen_de/qc.py", "Quality control module"),
    ("immgen_de/differential.py", "Differential expression module"),
    ("immgen_de/visualization.py", "Visualization module"),
    ("immgen_de/pipeline.py", "Pipeline runner"),
]

all_valid = True
for filepath, description in modules_to_check:
    if not verify_python_file(filepath, description):
        all_valid = False
    print()

# Verify configuration
print("\n[2] Verifying Configuration")
print("-" * 60)

config_file = "config/analysis_params.yaml"
required_sections = [
    "geo", "annotation", "preprocessing", "qc",
    "differential_expression", "reporting", "logging",
]

if os.path.exists(config_file):
    size = os.path.getsize(config_file)
    print(f"  ✓ {config_file} ({size} bytes)")

    with open(config_file, 'r') as f:
        top_level = {
            line.split(':', 1)[0]
            for line in f
            if line and not line[0].isspace() and not line.startswith('#') and ':' in line
        }

    for section in required_sections:
        if section in top_level:
            print(f"  ✓ section '{section}'")
        else:
            print(f"  ✗ section '{section}' NOT FOUND")
            all_valid = False
else:
    print(f"  ✗ {config_file} NOT FOUND")
    all_valid = False

# Check the statistical core
print("\n[3] Verifying Differential Expression Steps")
print("-" * 60)

with open("immgen_de/differential.py", 'r') as f:
    tree = ast.parse(f.read())

defined = {node.name for node in ast.walk(tree) if isinstance(node, ast.FunctionDef)}

steps_to_check = [
    ("build_design_matrix", "Two-group design matrix"),
    ("lm_fit", "Per-probe linear model"),
    ("fit_f_dist", "Variance prior estimation"),
    ("squeeze_var", "Variance moderation"),
    ("e_bayes", "Moderated t-statistics"),
    ("p_adjust", "Multiple testing correction"),
    ("top_table", "Ranked result table"),
    ("lookup_gene", "Gene symbol lookup"),
]

for name, description in steps_to_check:
    if name in defined:
        print(f"  ✓ {description} ({name})")
    else:
        print(f"  ✗ {description} ({name}) - NOT FOUND")
        all_valid = False

# Check tests
print("\n[4] Verifying Test Suite")
print("-" * 60)

if os.path.isdir("tests"):
    test_files = sorted(f for f in os.listdir("tests") if f.startswith("test_") and f.endswith(".py"))
    for test_file in test_files:
        with open(os.path.join("tests", test_file), 'r') as f:
            tree = ast.parse(f.read())
        n_tests = sum(
            1 for node in ast.walk(tree)
            if isinstance(node, ast.FunctionDef) and node.name.startswith("test_")
        )
        print(f"  ✓ tests/{test_file} ({n_tests} tests)")
else:
    print(f"  ✗ tests/ NOT FOUND")
    all_valid = False

# Summary
print("\n" + "="*60)
print("VERIFICATION SUMMARY")
print("="*60)

if all_valid:
    print("✓ All code structure checks PASSED")
    print()
    print("Code is ready for execution with:")
    print("  1. Install dependencies: pip install -e .[test]")
    print("  2. Run unit tests: pytest")
    print("  3. Run retrieval smoke test: python3 smoke_test_retrieval.py")
else:
    print("✗ Some checks FAILED")
    print("  Please review errors above")

print("="*60)

sys.exit(0 if all_valid else 1)
