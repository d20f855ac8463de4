from setuptools import setup, find_packages
import sys, os
sys.path.append(os.path.dirname(__file__))

from dependencies import install_deps, server_deps, test_deps

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name="pointseg",
    version="0.1.0",
    description="point-prompted interactive image segmentation with Segment Anything",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=['pointseg', 'pointseg.*']),
    install_requires = install_deps + server_deps,
    extras_require = {
      'test': test_deps,
      'all': test_deps,
    },
    python_requires='>=3.9',
    include_package_data=True,
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    entry_points = {
        'console_scripts': [
          'pointseg = pointseg.__main__:main']
    },
    py_modules=['dependencies'],

)
