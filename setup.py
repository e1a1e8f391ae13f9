from setuptools import find_packages, setup


LONG_DESCRIPTION = """\
Multi-device k-means clustering with k-means++ or random seeding and Yinyang
accelerated refinement, with kernels written in numba-dpex.
"""


setup(
    name="kmeans-dpex",
    description="Multi-device Yinyang k-means based on numba-dpex",
    license="BSD 3-Clause License",
    version="0.1.0",
    long_description=LONG_DESCRIPTION,
    classifiers=[
        "Intended Audience :: Science/Research",
        "Intended Audience :: Developers",
        "License :: OSI Approved",
        "Programming Language :: Python",
        "Topic :: Software Development",
        "Topic :: Scientific/Engineering",
        "Development Status :: 3 - Alpha",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX",
        "Operating System :: Unix",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: Implementation :: CPython",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numba-dpex==0.23.0",
        "numba>=0.59,<0.60",
        "dpctl==0.17.0",
        "dpnp==0.15.0",
        "scikit-learn",
        "numpy<2",
    ],
    extras_require={"test": ["pytest"]},
    packages=find_packages(include=["kmeans_dpex", "kmeans_dpex.*"]),
)
