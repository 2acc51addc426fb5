from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="latent-sc",
    version="0.1.0",
    author="Pritam Kumar Panda",
    author_email="pritam@stanford.edu",
    description="Latent factor models and variance decomposition for single-cell RNA-seq",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/latent-sc",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.7.0",
        "pandas>=1.3.0",
        "torch>=2.0.0",
        "pyro-ppl>=1.8.0",
        "anndata>=0.8.0",
        "scikit-learn>=1.0.0",
        "statsmodels>=0.13.0",
        "tqdm>=4.62.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
            "black>=22.0.0",
            "flake8>=4.0.0",
        ],
        "examples": [
            "scanpy>=1.9.0",
            "matplotlib>=3.4.0",
        ],
    },
)
