"""Fixed vocabularies used by the referral extractor.

Order matters: list-valued fields are reported in vocabulary order.
"""

UK_ETHNICITIES = [
    "white british", "white english", "white scottish", "white welsh", "white irish",
    "black caribbean", "black african", "black british",
    "asian indian", "asian pakistani", "asian bangladeshi", "asian chinese",
    "mixed white and black caribbean", "mixed white and black african",
    "mixed white and asian", "mixed other",
]

UK_LOCATIONS = [
    "London", "Manchester", "Birmingham", "Leeds", "Glasgow", "Liverpool",
    "Edinburgh", "Bristol", "Cardiff", "Belfast", "Newcastle", "Sheffield",
    "Nottingham", "Brighton", "Cambridge", "Oxford", "York", "Bath",
]

DISABILITIES = [
    "autism",
    "adhd",
    "cerebral palsy",
    "down syndrome",
    "epilepsy",
    "hearing impairment",
    "visual impairment",
    "physical disability",
    "learning disability",
    "mental health",
    "developmental delay",
]

SUPPORT_NEEDS = [
    "therapy",
    "counselling",
    "social work",
    "mental health support",
    "educational support",
    "medical support",
    "speech therapy",
    "occupational therapy",
    "physiotherapy",
]

MEDICAL_NEEDS = [
    "medication",
    "medical condition",
    "hospital",
    "doctor",
    "treatment",
    "therapy",
    "chronic condition",
    "health condition",
]

EDUCATIONAL_NEEDS = [
    "special school",
    "mainstream school",
    "home schooling",
    "tutoring",
    "educational support",
    "sen support",
    "school transport",
]

# Presence cues for boolean fields
SEN_CUES = [
    r"special educational needs",
    r"\bsen\b",
    r"learning difficulties",
    r"learning disability",
    r"special needs",
    r"educational support",
    r"statement of needs",
    r"ehcp",
    r"education health care plan",
]

BEHAVIOURAL_CUES = [
    r"behavioural",
    r"challenging behaviour",
    r"conduct disorder",
    r"oppositional defiant",
    r"anger management",
    r"aggressive",
    r"disruptive",
    r"attachment issues",
    r"trauma",
]

SIBLING_CUES = [
    r"sibling group",
    r"siblings",
    r"brother",
    r"sister",
]

PET_CUES = [
    r"pets allowed",
    r"pet friendly",
    r"animals allowed",
    r"dog friendly",
    r"cat friendly",
]

MALE_CUES = [
    r"gender[:\s]+male",
    r"sex[:\s]+male",
    r"\bmale\b",
    r"\bboy\b",
    r"\bhe\b",
    r"\bhim\b",
    r"\bhis\b",
]

FEMALE_CUES = [
    r"gender[:\s]+female",
    r"sex[:\s]+female",
    r"\bfemale\b",
    r"\bgirl\b",
    r"\bshe\b",
    r"\bher\b",
]
