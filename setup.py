from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else "AtlasScope: ordered MNN integration of scRNA-seq batches into a reference atlas."

setup(
	name="AtlasScope",
	version="1.0.0",
	description="Reference-atlas integration for scRNA-seq: feature harmonization, combined variance modelling and ordered MNN batch correction",
	long_description=readme,
	long_description_content_type="text/markdown",
	author="AtlasScope Contributors",
	license="MIT",
	packages=find_packages(exclude=("tests", "tests.*")),
	python_requires=">=3.9",
	install_requires=[
		"anndata>=0.10",
		"numpy>=1.23",
		"pandas>=1.5",
		"rich>=13",
		"click>=8",
		"pyyaml>=6",
		"pyarrow>=14",
		"scikit-learn>=1.2",
		"scipy>=1.10",
		"joblib>=1.3",
		"matplotlib>=3.7",
		"scanpy>=1.9",
		"statsmodels>=0.14",
		"seaborn>=0.12",
		"umap-learn>=0.5",
		"igraph>=0.10",
		"leidenalg>=0.10",
	],
	extras_require={
		"mnn": [
			"mnnpy>=0.1.9",
		],
		"test": [
			"pytest>=7",
		],
	},
	entry_points={
		"console_scripts": [
			"atlasscope=atlasscope.cli:main",
		]
	},
	classifiers=[
		"License :: OSI Approved :: MIT License",
		"Programming Language :: Python :: 3",
		"Programming Language :: Python :: 3 :: Only",
		"Programming Language :: Python :: 3.9",
		"Programming Language :: Python :: 3.10",
		"Programming Language :: Python :: 3.11",
		"Intended Audience :: Science/Research",
		"Topic :: Scientific/Engineering :: Bio-Informatics",
	],
)
