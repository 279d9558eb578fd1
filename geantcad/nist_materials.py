# geantcad/nist_materials.py
"""
Catalogue of the predefined Geant4 NIST materials offered in the material
picker, plus the default display colours used when one is assigned.

Only the NIST name is authoritative for a NIST material: the simulation
resolves density and composition at runtime, so the densities below are
informational.
"""
from dataclasses import dataclass
from enum import Enum


class Category(Enum):
    ELEMENTS = "Elements"
    COMPOUNDS = "Compounds"
    GASES = "Gases"
    METALS = "Metals"
    PLASTICS = "Plastics"
    SCINTILLATORS = "Scintillators"
    BIOLOGICAL = "Biological"
    SHIELDING = "Shielding"
    OPTICAL = "Optical"


@dataclass(frozen=True)
class MaterialInfo:
    nist_name: str
    display_name: str
    category: Category
    density: float  # g/cm3
    formula: str
    description: str

    def to_dict(self):
        return {
            "nistName": self.nist_name,
            "displayName": self.display_name,
            "category": self.category.value,
            "density": self.density,
            "formula": self.formula,
            "description": self.description,
        }


NIST_MATERIALS = [
    MaterialInfo("G4_H", "Hydrogen", Category.ELEMENTS, 0.0000899, "H", "Hydrogen gas"),
    MaterialInfo("G4_He", "Helium", Category.ELEMENTS, 0.000179, "He", "Helium gas"),
    MaterialInfo("G4_Li", "Lithium", Category.ELEMENTS, 0.534, "Li", "Lithium metal"),
    MaterialInfo("G4_Be", "Beryllium", Category.ELEMENTS, 1.848, "Be", "Beryllium metal"),
    MaterialInfo("G4_B", "Boron", Category.ELEMENTS, 2.37, "B", "Boron"),
    MaterialInfo("G4_C", "Carbon", Category.ELEMENTS, 2.0, "C", "Carbon (amorphous)"),
    MaterialInfo("G4_N", "Nitrogen", Category.ELEMENTS, 0.001251, "N", "Nitrogen gas"),
    MaterialInfo("G4_O", "Oxygen", Category.ELEMENTS, 0.001429, "O", "Oxygen gas"),
    MaterialInfo("G4_F", "Fluorine", Category.ELEMENTS, 0.001696, "F", "Fluorine gas"),
    MaterialInfo("G4_Ne", "Neon", Category.ELEMENTS, 0.0009, "Ne", "Neon gas"),
    MaterialInfo("G4_Na", "Sodium", Category.ELEMENTS, 0.971, "Na", "Sodium metal"),
    MaterialInfo("G4_Mg", "Magnesium", Category.ELEMENTS, 1.74, "Mg", "Magnesium metal"),
    MaterialInfo("G4_Al", "Aluminum", Category.ELEMENTS, 2.699, "Al", "Aluminum metal"),
    MaterialInfo("G4_Si", "Silicon", Category.ELEMENTS, 2.33, "Si", "Silicon crystal"),
    MaterialInfo("G4_P", "Phosphorus", Category.ELEMENTS, 2.2, "P", "Phosphorus"),
    MaterialInfo("G4_S", "Sulfur", Category.ELEMENTS, 2.0, "S", "Sulfur"),
    MaterialInfo("G4_Cl", "Chlorine", Category.ELEMENTS, 0.003214, "Cl", "Chlorine gas"),
    MaterialInfo("G4_Ar", "Argon", Category.ELEMENTS, 0.001784, "Ar", "Argon gas"),
    MaterialInfo("G4_K", "Potassium", Category.ELEMENTS, 0.862, "K", "Potassium metal"),
    MaterialInfo("G4_Ca", "Calcium", Category.ELEMENTS, 1.55, "Ca", "Calcium metal"),
    MaterialInfo("G4_Ti", "Titanium", Category.ELEMENTS, 4.54, "Ti", "Titanium metal"),
    MaterialInfo("G4_V", "Vanadium", Category.ELEMENTS, 6.11, "V", "Vanadium metal"),
    MaterialInfo("G4_Cr", "Chromium", Category.ELEMENTS, 7.18, "Cr", "Chromium metal"),
    MaterialInfo("G4_Mn", "Manganese", Category.ELEMENTS, 7.44, "Mn", "Manganese metal"),
    MaterialInfo("G4_Fe", "Iron", Category.ELEMENTS, 7.874, "Fe", "Iron metal"),
    MaterialInfo("G4_Co", "Cobalt", Category.ELEMENTS, 8.9, "Co", "Cobalt metal"),
    MaterialInfo("G4_Ni", "Nickel", Category.ELEMENTS, 8.902, "Ni", "Nickel metal"),
    MaterialInfo("G4_Cu", "Copper", Category.ELEMENTS, 8.96, "Cu", "Copper metal"),
    MaterialInfo("G4_Zn", "Zinc", Category.ELEMENTS, 7.133, "Zn", "Zinc metal"),
    MaterialInfo("G4_Ga", "Gallium", Category.ELEMENTS, 5.904, "Ga", "Gallium metal"),
    MaterialInfo("G4_Ge", "Germanium", Category.ELEMENTS, 5.323, "Ge", "Germanium crystal"),
    MaterialInfo("G4_As", "Arsenic", Category.ELEMENTS, 5.73, "As", "Arsenic"),
    MaterialInfo("G4_Se", "Selenium", Category.ELEMENTS, 4.5, "Se", "Selenium"),
    MaterialInfo("G4_Br", "Bromine", Category.ELEMENTS, 3.1028, "Br", "Bromine"),
    MaterialInfo("G4_Kr", "Krypton", Category.ELEMENTS, 0.003733, "Kr", "Krypton gas"),
    MaterialInfo("G4_Mo", "Molybdenum", Category.ELEMENTS, 10.22, "Mo", "Molybdenum metal"),
    MaterialInfo("G4_Ag", "Silver", Category.ELEMENTS, 10.5, "Ag", "Silver metal"),
    MaterialInfo("G4_Cd", "Cadmium", Category.ELEMENTS, 8.65, "Cd", "Cadmium metal"),
    MaterialInfo("G4_Sn", "Tin", Category.ELEMENTS, 7.31, "Sn", "Tin metal"),
    MaterialInfo("G4_I", "Iodine", Category.ELEMENTS, 4.93, "I", "Iodine"),
    MaterialInfo("G4_Xe", "Xenon", Category.ELEMENTS, 0.005887, "Xe", "Xenon gas"),
    MaterialInfo("G4_Cs", "Cesium", Category.ELEMENTS, 1.873, "Cs", "Cesium metal"),
    MaterialInfo("G4_Ba", "Barium", Category.ELEMENTS, 3.5, "Ba", "Barium metal"),
    MaterialInfo("G4_W", "Tungsten", Category.ELEMENTS, 19.3, "W", "Tungsten metal"),
    MaterialInfo("G4_Pt", "Platinum", Category.ELEMENTS, 21.45, "Pt", "Platinum metal"),
    MaterialInfo("G4_Au", "Gold", Category.ELEMENTS, 19.32, "Au", "Gold metal"),
    MaterialInfo("G4_Pb", "Lead", Category.ELEMENTS, 11.35, "Pb", "Lead metal"),
    MaterialInfo("G4_Bi", "Bismuth", Category.ELEMENTS, 9.747, "Bi", "Bismuth metal"),
    MaterialInfo("G4_U", "Uranium", Category.ELEMENTS, 18.95, "U", "Uranium metal"),
    MaterialInfo("G4_AIR", "Air", Category.COMPOUNDS, 0.001205, "N₂ + O₂", "Standard air at STP"),
    MaterialInfo("G4_WATER", "Water", Category.COMPOUNDS, 1.0, "H₂O", "Liquid water"),
    MaterialInfo("G4_WATER_VAPOR", "Water Vapor", Category.GASES, 0.000756, "H₂O", "Water vapor"),
    MaterialInfo("G4_CARBON_DIOXIDE", "Carbon Dioxide", Category.GASES, 0.001977, "CO₂", "Carbon dioxide gas"),
    MaterialInfo("G4_lAr", "Liquid Argon", Category.COMPOUNDS, 1.396, "Ar", "Liquid argon"),
    MaterialInfo("G4_lKr", "Liquid Krypton", Category.COMPOUNDS, 2.418, "Kr", "Liquid krypton"),
    MaterialInfo("G4_lXe", "Liquid Xenon", Category.COMPOUNDS, 2.953, "Xe", "Liquid xenon"),
    MaterialInfo("G4_lN2", "Liquid Nitrogen", Category.COMPOUNDS, 0.807, "N₂", "Liquid nitrogen"),
    MaterialInfo("G4_lO2", "Liquid Oxygen", Category.COMPOUNDS, 1.141, "O₂", "Liquid oxygen"),
    MaterialInfo("G4_lH2", "Liquid Hydrogen", Category.COMPOUNDS, 0.0708, "H₂", "Liquid hydrogen"),
    MaterialInfo("G4_Galactic", "Galactic Vacuum", Category.COMPOUNDS, 1e-25, "", "Ultra-high vacuum"),
    MaterialInfo("G4_STAINLESS-STEEL", "Stainless Steel", Category.METALS, 8.0, "Fe-Cr-Ni", "316L stainless steel"),
    MaterialInfo("G4_BRASS", "Brass", Category.METALS, 8.52, "Cu-Zn", "Standard brass"),
    MaterialInfo("G4_BRONZE", "Bronze", Category.METALS, 8.82, "Cu-Sn", "Standard bronze"),
    MaterialInfo("G4_POLYETHYLENE", "Polyethylene", Category.PLASTICS, 0.94, "(C₂H₄)ₙ", "PE plastic"),
    MaterialInfo("G4_POLYPROPYLENE", "Polypropylene", Category.PLASTICS, 0.9, "(C₃H₆)ₙ", "PP plastic"),
    MaterialInfo("G4_POLYSTYRENE", "Polystyrene", Category.PLASTICS, 1.06, "(C₈H₈)ₙ", "PS plastic"),
    MaterialInfo("G4_PLEXIGLASS", "Plexiglass (PMMA)", Category.PLASTICS, 1.19, "(C₅O₂H₈)ₙ", "Acrylic (PMMA)"),
    MaterialInfo("G4_NYLON-6-6", "Nylon 6-6", Category.PLASTICS, 1.14, "(C₁₂H₂₂N₂O₂)ₙ", "Polyamide 6-6"),
    MaterialInfo("G4_TEFLON", "Teflon (PTFE)", Category.PLASTICS, 2.2, "(C₂F₄)ₙ", "Polytetrafluoroethylene"),
    MaterialInfo("G4_KAPTON", "Kapton", Category.PLASTICS, 1.42, "(C₂₂H₁₀N₂O₅)ₙ", "Polyimide film"),
    MaterialInfo("G4_MYLAR", "Mylar", Category.PLASTICS, 1.4, "(C₁₀H₈O₄)ₙ", "PET film"),
    MaterialInfo("G4_LUCITE", "Lucite", Category.PLASTICS, 1.19, "(C₅O₂H₈)ₙ", "Polymethyl methacrylate"),
    MaterialInfo("G4_PVC", "PVC", Category.PLASTICS, 1.3, "(C₂H₃Cl)ₙ", "Polyvinyl chloride"),
    MaterialInfo("G4_SODIUM_IODIDE", "Sodium Iodide", Category.SCINTILLATORS, 3.67, "NaI", "NaI(Tl) scintillator"),
    MaterialInfo("G4_CESIUM_IODIDE", "Cesium Iodide", Category.SCINTILLATORS, 4.51, "CsI", "CsI(Tl) scintillator"),
    MaterialInfo("G4_BGO", "BGO", Category.SCINTILLATORS, 7.13, "Bi₄Ge₃O₁₂", "Bismuth germanate"),
    MaterialInfo("G4_LYSO", "LYSO", Category.SCINTILLATORS, 7.1, "Lu₂SiO₅", "Lutetium-yttrium oxyorthosilicate"),
    MaterialInfo("G4_PbWO4", "Lead Tungstate", Category.SCINTILLATORS, 8.28, "PbWO₄", "PWO crystal"),
    MaterialInfo("G4_ANTHRACENE", "Anthracene", Category.SCINTILLATORS, 1.25, "C₁₄H₁₀", "Organic scintillator"),
    MaterialInfo("G4_STILBENE", "Stilbene", Category.SCINTILLATORS, 0.9707, "C₁₄H₁₂", "Organic scintillator"),
    MaterialInfo("G4_PLASTIC_SC_VINYLTOLUENE", "Plastic Scintillator", Category.SCINTILLATORS, 1.032, "", "Vinyltoluene based"),
    MaterialInfo("G4_BONE_COMPACT_ICRU", "Compact Bone", Category.BIOLOGICAL, 1.85, "", "Cortical bone (ICRU)"),
    MaterialInfo("G4_BONE_CORTICAL_ICRP", "Cortical Bone", Category.BIOLOGICAL, 1.92, "", "Cortical bone (ICRP)"),
    MaterialInfo("G4_MUSCLE_SKELETAL_ICRP", "Skeletal Muscle", Category.BIOLOGICAL, 1.04, "", "Skeletal muscle"),
    MaterialInfo("G4_MUSCLE_STRIATED_ICRU", "Striated Muscle", Category.BIOLOGICAL, 1.04, "", "Striated muscle"),
    MaterialInfo("G4_ADIPOSE_TISSUE_ICRP", "Adipose Tissue", Category.BIOLOGICAL, 0.95, "", "Fat tissue"),
    MaterialInfo("G4_BRAIN_ICRP", "Brain", Category.BIOLOGICAL, 1.03, "", "Brain tissue"),
    MaterialInfo("G4_LUNG_ICRP", "Lung", Category.BIOLOGICAL, 1.05, "", "Lung tissue (ICRP)"),
    MaterialInfo("G4_TISSUE_SOFT_ICRP", "Soft Tissue", Category.BIOLOGICAL, 1.0, "", "Soft tissue (ICRP)"),
    MaterialInfo("G4_SKIN_ICRP", "Skin", Category.BIOLOGICAL, 1.09, "", "Skin (ICRP)"),
    MaterialInfo("G4_BLOOD_ICRP", "Blood", Category.BIOLOGICAL, 1.06, "", "Blood (ICRP)"),
    MaterialInfo("G4_EYE_LENS_ICRP", "Eye Lens", Category.BIOLOGICAL, 1.07, "", "Eye lens tissue"),
    MaterialInfo("G4_CONCRETE", "Concrete", Category.SHIELDING, 2.3, "", "Standard concrete"),
    MaterialInfo("G4_BARITE", "Barite Concrete", Category.SHIELDING, 3.5, "BaSO₄", "High-density concrete"),
    MaterialInfo("G4_PARAFFIN", "Paraffin", Category.SHIELDING, 0.93, "CₙH₂ₙ₊₂", "Neutron moderator"),
    MaterialInfo("G4_BORON_CARBIDE", "Boron Carbide", Category.SHIELDING, 2.52, "B₄C", "Neutron absorber"),
    MaterialInfo("G4_GRAPHITE", "Graphite", Category.SHIELDING, 2.21, "C", "Reactor-grade graphite"),
    MaterialInfo("G4_LITHIUM_FLUORIDE", "Lithium Fluoride", Category.SHIELDING, 2.635, "LiF", "Neutron absorber"),
    MaterialInfo("G4_GLASS_PLATE", "Glass", Category.OPTICAL, 2.4, "SiO₂", "Plate glass"),
    MaterialInfo("G4_SILICON_DIOXIDE", "Silica", Category.OPTICAL, 2.2, "SiO₂", "Fused silica (quartz)"),
    MaterialInfo("G4_LITHIUM_OXIDE", "Lithium Oxide", Category.OPTICAL, 2.013, "Li₂O", "Glass component"),
    MaterialInfo("G4_BORON_OXIDE", "Boron Oxide", Category.OPTICAL, 1.812, "B₂O₃", "Glass component"),
    MaterialInfo("G4_METHANE", "Methane", Category.GASES, 0.000717, "CH₄", "Methane gas"),
    MaterialInfo("G4_ETHANE", "Ethane", Category.GASES, 0.001356, "C₂H₆", "Ethane gas"),
    MaterialInfo("G4_PROPANE", "Propane", Category.GASES, 0.001879, "C₃H₈", "Propane gas"),
    MaterialInfo("G4_BUTANE", "Butane", Category.GASES, 0.00249, "C₄H₁₀", "Butane gas"),
    MaterialInfo("G4_AMMONIA", "Ammonia", Category.GASES, 0.000826, "NH₃", "Ammonia gas"),
]

_BY_NAME = {info.nist_name: info for info in NIST_MATERIALS}

# (r, g, b, a) display hints; anything not listed gets the neutral default.
DEFAULT_COLOR = (0.8, 0.8, 0.8, 1.0)
NIST_COLORS = {
    "G4_AIR": (0.9, 0.9, 0.9, 0.3),
    "G4_Galactic": (0.9, 0.9, 0.9, 0.3),
    "G4_WATER": (0.2, 0.4, 0.8, 0.5),
    "G4_Pb": (0.3, 0.3, 0.3, 1.0),
    "G4_Si": (0.7, 0.7, 0.8, 1.0),
    "G4_SILICON_DIOXIDE": (0.7, 0.7, 0.8, 1.0),
    "G4_Al": (0.8, 0.8, 0.85, 1.0),
    "G4_Fe": (0.5, 0.5, 0.5, 1.0),
    "G4_Cu": (0.8, 0.5, 0.2, 1.0),
    "G4_Ti": (0.7, 0.7, 0.7, 1.0),
    "G4_STAINLESS-STEEL": (0.6, 0.6, 0.65, 1.0),
    "G4_BRASS": (0.8, 0.7, 0.4, 1.0),
    "G4_BRONZE": (0.7, 0.5, 0.3, 1.0),
    "G4_GLASS_PLATE": (0.9, 0.95, 1.0, 0.6),
    "G4_Pyrex_Glass": (0.9, 0.95, 1.0, 0.6),
    "G4_POLYSTYRENE": (0.95, 0.95, 0.95, 0.8),
    "G4_POLYETHYLENE": (0.95, 0.95, 0.95, 0.8),
    "G4_PLEXIGLASS": (0.9, 0.9, 1.0, 0.7),
    "G4_CARBON_DIOXIDE": (0.85, 0.85, 0.85, 0.2),
    "G4_Ar": (0.9, 0.9, 0.95, 0.1),
    "G4_He": (0.95, 0.95, 1.0, 0.1),
    "G4_N": (0.9, 0.9, 0.9, 0.1),
    "G4_O": (0.9, 0.9, 0.95, 0.1),
    "G4_Na": (0.9, 0.9, 0.7, 1.0),
    "G4_I": (0.7, 0.5, 0.9, 1.0),
    "G4_CsI": (0.9, 0.9, 0.7, 1.0),
    "G4_CESIUM_IODIDE": (0.9, 0.9, 0.7, 1.0),
    "G4_NaI": (0.9, 0.95, 0.8, 1.0),
    "G4_SODIUM_IODIDE": (0.9, 0.95, 0.8, 1.0),
    "G4_BGO": (0.8, 0.9, 0.9, 1.0),
    "G4_LYSO": (0.7, 0.8, 0.9, 1.0),
}

_LIQUIDS = {"G4_WATER"}
_GASES = {"G4_AIR", "G4_Galactic"}


def find_by_nist_name(nist_name):
    """Returns the MaterialInfo for `nist_name`, or None if it is not catalogued."""
    return _BY_NAME.get(nist_name)


def search(query):
    """Case-insensitive substring search over display name, NIST name and formula."""
    needle = (query or "").strip().lower()
    if not needle:
        return list(NIST_MATERIALS)
    return [
        info for info in NIST_MATERIALS
        if needle in info.display_name.lower()
        or needle in info.nist_name.lower()
        or needle in info.formula.lower()
    ]


def materials_by_category(category):
    category = Category(category)
    return [info for info in NIST_MATERIALS if info.category is category]


def categories():
    return list(Category)


def color_for(nist_name):
    return NIST_COLORS.get(nist_name, DEFAULT_COLOR)


def default_state(nist_name):
    """Best-guess physical state ('solid', 'liquid' or 'gas') of a NIST material."""
    if nist_name in _GASES:
        return "gas"
    if nist_name in _LIQUIDS or nist_name.startswith("G4_l"):
        return "liquid"
    info = _BY_NAME.get(nist_name)
    if info is None:
        return "solid"
    if info.category is Category.GASES or info.description.lower().endswith(" gas"):
        return "gas"
    return "solid"
