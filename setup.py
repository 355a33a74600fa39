from setuptools import setup, find_packages

setup(
    name="courtvae",
    version="0.1.0",
    description="Online variational learning of college basketball team playing styles",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.22.4",
        "pandas>=1.5.3",
        "scipy>=1.10.0",
        "scikit-learn>=1.3.0",
        "torch>=2.0.0",
    ],
    extras_require={
        "tests": ["pytest>=7.0"],
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "courtvae=courtvae.main:main",
        ],
    },
)
