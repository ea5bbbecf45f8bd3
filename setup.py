from setuptools import setup, find_packages

setup(
    name="lrps",
    version="0.1.0",
    packages=find_packages(include=["lrps", "lrps.*", "volumes", "volumes.*", "surfaces", "surfaces.*"]),
    py_modules=["vc_segment"],
    install_requires=[
        "torch>=1.9.0",
        "numpy",
        "zarr",
        "pillow",
        "matplotlib",
        "tqdm",
        "scipy",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "vc_segment=vc_segment:main",
        ],
    },
    author="Volume Cartographer Team",
    author_email="info@volumecartographer.com",
    description="Local reslice particle simulation for propagating segmentations through CT volumes",
    keywords="segmentation, virtual unwrapping, volume cartographer, ct",
    url="https://github.com/volumecartographer/vc_tracer",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
    ],
    python_requires=">=3.8",
)
