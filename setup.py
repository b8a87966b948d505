from setuptools import setup, find_packages

setup(
    name="resourcestore",
    version="1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.9",
    install_requires=[
        "pyyaml>=6.0",
        "pg8000>=1.29",
    ],
    extras_require={
        "test": ["pytest>=7.2"],
    },
)
