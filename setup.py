from setuptools import setup, find_packages

setup(
    name="bathy_slam",
    version="0.1.0",
    description="Bathy SLAM: offline pose-graph SLAM and benchmarking for bathymetric submaps",
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    python_requires=">=3.8",
    entry_points={
        'console_scripts': [
            'bathy_slam = bathy_slam.cli:main',
        ],
    },
    install_requires=[
        "numpy",
        "scipy",
    ],
    extras_require={
        "dev": [
            "pytest",
            "flake8",
            "black",
        ]
    }
)
