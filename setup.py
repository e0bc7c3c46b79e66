from setuptools import setup, find_packages

setup(
    name="LMMTour",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "matplotlib",
        "scipy",
        "statsmodels",
    ],
    extras_require={
        "progress": ["tqdm"],
        "parallel": ["joblib"],
        "test": ["pytest", "joblib", "tqdm"],
    },
    entry_points={
        "console_scripts": ["lmmtour=lmmtour.cli:main"],
    },
    python_requires=">=3.9",
    author="Paweł Lenartowicz",
    description="A guided tour of linear and mixed models by simulation",
)
