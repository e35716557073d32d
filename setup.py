import setuptools

setuptools.setup(
    name="glusnfr",
    version="0.0.1",
    description="dF/F normalization and Schmitt-trigger ROI classification for evoked fluorescence responses",
    packages=setuptools.find_packages(),
    python_requires=">=3.8",
    install_requires=[
        "numpy",
        "torch",
        "numba",
        "pandas",
        "tqdm",
        "natsort",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
