"""Setup script for pygop."""
from setuptools import find_packages, setup

setup(
    name="pygop",
    version="0.1.0",
    description="Global optimization for non-negative matrix factorization",
    packages=find_packages(include=["pygop", "pygop.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scikit-learn>=1.6",
        "joblib>=1.2",
        "tqdm>=4.60",
        "pandas>=1.5",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
)
