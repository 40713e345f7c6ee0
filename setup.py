import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="onmf",
    version="0.1",
    description="Orthogonal and online nonnegative matrix factorization with multiplicative updates",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=['onmf'],
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Mathematics",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires='>=3.7',
    install_requires=['numpy', 'scipy'],
    extras_require={
        'test': ['pytest'],
        'study': ['tabulate', 'matplotlib'],
    },
)
